from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .api import admin_router, router
from .booking import BookingCoordinator
from .config import settings
from .core.cache import SummaryCache
from .core.logging_config import setup_logging
from .core.metrics_ext import PerformanceBudgetMiddleware, render_latest
from .core.middleware import RequestTracingMiddleware, SecurityHeadersMiddleware
from .db import Base, SessionLocal, engine
from .errors import ValidationError
from .notifications import BroadcastSink, Notifier
from .refresh import RefreshScheduler


def create_app(session_factory=SessionLocal, bind=engine, sink=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if str(bind.url).startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
            Base.metadata.create_all(bind=bind)

        app.state.notifier.start()
        app.state.summary_cache.start()
        if bool(settings.SUMMARY_REFRESH_ENABLED):
            app.state.refresh_scheduler.start()
        try:
            yield
        finally:
            app.state.refresh_scheduler.stop()
            app.state.summary_cache.stop()
            app.state.notifier.stop(wait=True)

    app = FastAPI(
        title="ClinicBook",
        description="Appointment slot booking engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    notifier = Notifier(sink or BroadcastSink.from_settings(), max_workers=settings.NOTIFY_WORKERS)
    summary_cache = SummaryCache(
        session_factory,
        directory=settings.SUMMARY_CACHE_DIR,
        ttl_seconds=settings.SUMMARY_CACHE_TTL_SECONDS,
    )
    app.state.session_local = session_factory
    app.state.notifier = notifier
    app.state.coordinator = BookingCoordinator(notifier)
    app.state.summary_cache = summary_cache
    app.state.refresh_scheduler = RefreshScheduler(
        session_factory,
        cache=summary_cache,
        interval_seconds=settings.SUMMARY_REFRESH_INTERVAL_SECONDS,
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError("Invalid request", details={"errors": jsonable_encoder(exc.errors())})
        return JSONResponse(status_code=error.status_code, content={"detail": error.to_dict()})

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestTracingMiddleware)
    app.add_middleware(PerformanceBudgetMiddleware)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/health/ready")
    def ready(request: Request):
        checks = {"db": "ok", "redis": "skipped"}
        db_ok = True
        redis_ok = True

        try:
            with request.app.state.session_local() as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError:
            checks["db"] = "error"
            db_ok = False

        redis_url = (settings.REDIS_URL or "").strip()
        if redis_url and bool(settings.EVENT_BUS_ENABLED):
            try:
                redis.from_url(redis_url, decode_responses=True).ping()
                checks["redis"] = "ok"
            except redis.RedisError:
                checks["redis"] = "error"
                redis_ok = False

        # Broadcast is best-effort; a missing event bus degrades readiness reporting only.
        checks["notifier"] = "ok" if request.app.state.notifier.running else "stopped"
        if db_ok:
            return {"status": "ready" if redis_ok else "degraded", "checks": checks}
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})

    @app.get("/metrics")
    def metrics():
        payload, content_type = render_latest()
        return Response(content=payload, media_type=content_type)

    app.include_router(router)
    app.include_router(admin_router)
    return app


setup_logging()

app = create_app()

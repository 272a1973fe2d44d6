import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..config import settings

logger = structlog.get_logger("clinicbook.middleware")


class RequestTracingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = (request.headers.get("X-Request-ID") or "").strip() or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            app="clinicbook",
        )

        start_time = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                error=str(exc),
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_finished",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if bool(settings.SECURITY_HEADERS_ENABLED):
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            # Calendar summaries set their own short public cache window.
            response.headers.setdefault("Cache-Control", "no-store")
        return response

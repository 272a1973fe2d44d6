import time

import structlog
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

REQUEST_COUNT = Counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram("http_request_duration_seconds", "HTTP request latency", ["method", "endpoint"])

BOOKING_OUTCOMES = Counter(
    "clinicbook_booking_operations_total",
    "Booking coordinator operations by outcome",
    ["operation", "outcome"],
)
NOTIFY_DISPATCH = Counter(
    "clinicbook_notify_dispatch_total",
    "Best-effort broadcast dispatches by channel and outcome",
    ["channel", "outcome"],
)
SWEEP_ROWS = Counter(
    "clinicbook_summary_sweep_rows_total",
    "Summary rows touched by the refresh sweep",
    ["result"],
)
SWEEP_DURATION = Histogram(
    "clinicbook_summary_sweep_duration_seconds",
    "Wall time of one summary refresh sweep",
)

logger = structlog.get_logger("clinicbook.performance")

BUDGET_SECONDS = 0.200


def render_latest() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST


class PerformanceBudgetMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        path = scope["path"]
        start_time = time.perf_counter()

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                duration = time.perf_counter() - start_time
                REQUEST_COUNT.labels(method=method, endpoint=path, status=message["status"]).inc()
                REQUEST_LATENCY.labels(method=method, endpoint=path).observe(duration)
                if duration > BUDGET_SECONDS:
                    logger.warning(
                        "performance_budget_exceeded",
                        path=path,
                        duration_ms=round(duration * 1000, 2),
                        limit_ms=int(BUDGET_SECONDS * 1000),
                    )
            await send(message)

        await self.app(scope, receive, send_wrapper)

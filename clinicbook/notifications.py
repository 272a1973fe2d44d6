"""
Best-effort broadcast of reservation changes.

Dispatch runs on a small worker pool after the booking transaction commits.
``Notifier.submit`` returns immediately; the ``DispatchResult`` list produced
by the worker is logged and may be discarded by the caller. Nothing here can
fail or roll back a booking.
"""

import json
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, time

import httpx
import redis
import structlog

from .config import settings
from .core.metrics_ext import NOTIFY_DISPATCH
from .slots import format_hhmm

logger = structlog.get_logger("clinicbook.notifications")

EVENT_CREATED = "reservation.created"
EVENT_CANCELLED = "reservation.cancelled"
EVENT_RESCHEDULED = "reservation.rescheduled"
EVENT_STATUS_CHANGED = "reservation.status_changed"


@dataclass(frozen=True)
class BroadcastEvent:
    kind: str
    reservation_id: int
    practitioner_id: int
    day: date
    time: time
    status: str

    @classmethod
    def for_reservation(cls, kind: str, reservation) -> "BroadcastEvent":
        return cls(
            kind=kind,
            reservation_id=int(reservation.id),
            practitioner_id=int(reservation.practitioner_id),
            day=reservation.day,
            time=reservation.time,
            status=reservation.status,
        )

    def as_payload(self) -> dict:
        return {
            "kind": self.kind,
            "reservation_id": self.reservation_id,
            "practitioner_id": self.practitioner_id,
            "date": self.day.isoformat(),
            "time": format_hhmm(self.time),
            "status": self.status,
        }


@dataclass(frozen=True)
class DispatchResult:
    channel: str
    ok: bool
    error: str | None = None


class BroadcastSink:
    """Publishes events to the Redis event stream and an optional HTTP relay."""

    def __init__(
        self,
        redis_url: str = "",
        stream: str = "clinicbook.events",
        broadcast_url: str = "",
        api_key: str = "",
        timeout_seconds: float = 2.0,
    ):
        self.redis_url = (redis_url or "").strip()
        self.stream = (stream or "").strip() or "clinicbook.events"
        self.broadcast_url = (broadcast_url or "").strip()
        self.api_key = (api_key or "").strip()
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self._redis: redis.Redis | None = None

    @classmethod
    def from_settings(cls) -> "BroadcastSink":
        return cls(
            redis_url=settings.REDIS_URL if settings.EVENT_BUS_ENABLED else "",
            stream=settings.EVENT_BUS_STREAM,
            broadcast_url=settings.BROADCAST_URL,
            api_key=settings.BROADCAST_API_KEY,
            timeout_seconds=settings.BROADCAST_TIMEOUT_SECONDS,
        )

    def _redis_client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.timeout_seconds,
                socket_connect_timeout=self.timeout_seconds,
            )
        return self._redis

    def _publish_stream(self, payload: dict) -> DispatchResult:
        try:
            self._redis_client().xadd(
                self.stream,
                {"kind": payload["kind"], "payload_json": json.dumps(payload, ensure_ascii=True)},
                maxlen=10000,
                approximate=True,
            )
        except redis.RedisError as exc:
            return DispatchResult(channel="redis", ok=False, error=str(exc))
        return DispatchResult(channel="redis", ok=True)

    def _publish_http(self, payload: dict) -> DispatchResult:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        try:
            response = httpx.post(
                self.broadcast_url,
                json=payload,
                headers=headers,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            return DispatchResult(channel="http", ok=False, error=str(exc))
        return DispatchResult(channel="http", ok=True)

    def publish(self, event: BroadcastEvent) -> list[DispatchResult]:
        payload = event.as_payload()
        results: list[DispatchResult] = []
        if self.redis_url:
            results.append(self._publish_stream(payload))
        if self.broadcast_url:
            results.append(self._publish_http(payload))
        return results


class Notifier:
    def __init__(self, sink, max_workers: int = 2):
        self.sink = sink
        self.max_workers = max(1, int(max_workers))
        self._executor: ThreadPoolExecutor | None = None

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="clinicbook-notify"
            )

    def stop(self, wait: bool = True) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def submit(self, event: BroadcastEvent) -> Future | None:
        executor = self._executor
        if executor is None:
            logger.warning("notify_skipped", reason="notifier_stopped", kind=event.kind, reservation_id=event.reservation_id)
            return None
        try:
            return executor.submit(self._dispatch, event)
        except RuntimeError as exc:
            logger.warning("notify_skipped", reason=str(exc), kind=event.kind, reservation_id=event.reservation_id)
            return None

    def _dispatch(self, event: BroadcastEvent) -> list[DispatchResult]:
        try:
            results = list(self.sink.publish(event))
        except Exception as exc:
            # Boundary of the best-effort contract: nothing propagates past here.
            results = [DispatchResult(channel="sink", ok=False, error=str(exc))]

        for result in results:
            NOTIFY_DISPATCH.labels(channel=result.channel, outcome="ok" if result.ok else "error").inc()
            if result.ok:
                logger.info("notify_dispatched", kind=event.kind, reservation_id=event.reservation_id, channel=result.channel)
            else:
                logger.warning(
                    "notify_failed",
                    kind=event.kind,
                    reservation_id=event.reservation_id,
                    channel=result.channel,
                    error=result.error,
                )
        return results

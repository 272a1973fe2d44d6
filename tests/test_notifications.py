from datetime import date, time

import httpx
import redis

from clinicbook.booking import BookingCoordinator
from clinicbook.models import STATUS_REQUESTED
from clinicbook.notifications import (
    EVENT_CREATED,
    BroadcastEvent,
    BroadcastSink,
    DispatchResult,
    Notifier,
)

from conftest import NOW, seed_practitioner

EVENT = BroadcastEvent(
    kind=EVENT_CREATED,
    reservation_id=7,
    practitioner_id=3,
    day=date(2024, 5, 6),
    time=time(10, 0),
    status=STATUS_REQUESTED,
)


class ExplodingSink:
    def publish(self, event):
        raise RuntimeError("relay offline")


class RecordingSink:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return [DispatchResult(channel="test", ok=True)]


def test_event_payload_uses_iso_date_and_hhmm_time():
    assert EVENT.as_payload() == {
        "kind": "reservation.created",
        "reservation_id": 7,
        "practitioner_id": 3,
        "date": "2024-05-06",
        "time": "10:00",
        "status": "REQUESTED",
    }


def test_failing_sink_is_reported_not_raised():
    notifier = Notifier(ExplodingSink(), max_workers=1)
    notifier.start()
    try:
        future = notifier.submit(EVENT)
        results = future.result(timeout=5)
    finally:
        notifier.stop()

    assert results == [DispatchResult(channel="sink", ok=False, error="relay offline")]


def test_submit_after_stop_is_skipped():
    notifier = Notifier(RecordingSink())

    assert notifier.submit(EVENT) is None
    assert notifier.running is False


def test_booking_succeeds_when_broadcast_fails(db):
    practitioner = seed_practitioner(db)
    notifier = Notifier(ExplodingSink(), max_workers=1)
    notifier.start()
    coordinator = BookingCoordinator(
        notifier, clock=lambda: NOW, lead_minutes=60, horizon_days=28, cap_policy="blank_day", auto_confirm=False
    )
    try:
        reservation = coordinator.create(db, practitioner.id, "P-1001", date(2024, 5, 6), time(10, 0))
    finally:
        notifier.stop(wait=True)

    assert reservation.id > 0
    assert reservation.status == STATUS_REQUESTED


def test_sink_posts_to_http_relay_with_api_key(monkeypatch):
    calls = []

    def fake_post(url, json, headers, timeout):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    sink = BroadcastSink(broadcast_url="http://relay.local/broadcast", api_key="k-123", timeout_seconds=2.0)

    results = sink.publish(EVENT)

    assert results == [DispatchResult(channel="http", ok=True)]
    assert calls[0]["headers"]["X-API-Key"] == "k-123"
    assert calls[0]["timeout"] == 2.0
    assert calls[0]["json"]["reservation_id"] == 7


def test_sink_reports_http_errors(monkeypatch):
    def fake_post(url, json, headers, timeout):
        raise httpx.ConnectTimeout("timed out")

    monkeypatch.setattr(httpx, "post", fake_post)
    sink = BroadcastSink(broadcast_url="http://relay.local/broadcast")

    results = sink.publish(EVENT)

    assert len(results) == 1
    assert results[0].ok is False
    assert "timed out" in results[0].error


def test_sink_reports_redis_errors():
    class BrokenRedis:
        def xadd(self, *args, **kwargs):
            raise redis.ConnectionError("connection refused")

    sink = BroadcastSink(redis_url="redis://localhost:6399/0")
    sink._redis = BrokenRedis()

    results = sink.publish(EVENT)

    assert results == [DispatchResult(channel="redis", ok=False, error="connection refused")]


def test_sink_without_targets_does_nothing():
    assert BroadcastSink().publish(EVENT) == []

"""
Periodic recomputation of the daily availability summaries.

The sweep reads rules and occupancy in bulk, regenerates each practitioner's
grid for every bookable date, and upserts one summary row per pair. Each pair
runs in its own savepoint; a failure is recorded and the sweep moves on.
"""

import threading
import time as _time
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .core.cache import SummaryCount
from .core.metrics_ext import SWEEP_DURATION, SWEEP_ROWS
from .errors import PartialRefreshFailure
from .models import DailyAvailabilitySummary, utc_now_naive
from .occupancy import active_times_in_range
from .schedule import clinic_now, list_active_practitioners, load_rules_for_range
from .slots import generate_slots

logger = structlog.get_logger("clinicbook.refresh")


@dataclass(frozen=True)
class RefreshFailure:
    practitioner_id: int
    day: date
    error: str

    def as_dict(self) -> dict:
        return {"practitioner_id": self.practitioner_id, "date": self.day.isoformat(), "error": self.error}


@dataclass
class SweepResult:
    updated: int = 0
    deleted: int = 0
    failures: list[RefreshFailure] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return not self.failures

    def failure_report(self) -> PartialRefreshFailure | None:
        return PartialRefreshFailure(self.failures) if self.failures else None

    def as_dict(self) -> dict:
        return {
            "updated": self.updated,
            "deleted": self.deleted,
            "failures": [f.as_dict() for f in self.failures],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def _upsert_summary(db, practitioner_id: int, day: date, grid, booked: int, computed_at: datetime) -> SummaryCount:
    values = {
        "total_slots": grid.total_count,
        "available_slots": grid.available_count,
        "booked_slots": int(booked),
        "is_off": bool(grid.is_off),
        "computed_at": computed_at,
    }
    dialect_name = db.get_bind().dialect.name
    if dialect_name in ("sqlite", "postgresql"):
        dialect_insert = sqlite_insert if dialect_name == "sqlite" else pg_insert
        stmt = dialect_insert(DailyAvailabilitySummary).values(practitioner_id=practitioner_id, day=day, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["practitioner_id", "day"], set_=values)
        db.execute(stmt)
    else:
        row = db.execute(
            select(DailyAvailabilitySummary).where(
                DailyAvailabilitySummary.practitioner_id == practitioner_id,
                DailyAvailabilitySummary.day == day,
            )
        ).scalar_one_or_none()
        if row is None:
            row = DailyAvailabilitySummary(practitioner_id=practitioner_id, day=day)
            db.add(row)
        for name, value in values.items():
            setattr(row, name, value)
        db.flush()
    return SummaryCount(
        practitioner_id=int(practitioner_id),
        day=day,
        total=values["total_slots"],
        available=values["available_slots"],
        booked=values["booked_slots"],
        is_off=values["is_off"],
        computed_at=computed_at,
    )


def run_sweep(
    session_factory,
    cache=None,
    today: date | None = None,
    *,
    now: datetime | None = None,
    horizon_days: int | None = None,
    lead_minutes: int | None = None,
    cap_policy: str | None = None,
) -> SweepResult:
    """Recompute summaries for [today, today + horizon] and drop rows that can no longer be booked."""
    if now is None:
        now = datetime.combine(today, time.min) if today is not None else clinic_now()
    first_day = today or now.date()
    horizon = int(settings.BOOKING_HORIZON_DAYS if horizon_days is None else horizon_days)
    last_day = first_day + timedelta(days=horizon)
    lead = int(settings.BOOKING_MIN_LEAD_MINUTES if lead_minutes is None else lead_minutes)
    policy = (cap_policy or settings.DAILY_CAP_POLICY).strip().lower()

    result = SweepResult(started_at=utc_now_naive())
    started = _time.perf_counter()
    written = []

    with session_factory() as db:
        practitioner_ids = [int(p.id) for p in list_active_practitioners(db)]
        rules = load_rules_for_range(db, practitioner_ids, first_day, last_day)
        occupancy = active_times_in_range(db, first_day, last_day, practitioner_ids)
        computed_at = utc_now_naive()

        for (practitioner_id, day), rule in sorted(rules.items()):
            occupied = occupancy.get((practitioner_id, day), set())
            try:
                with db.begin_nested():
                    grid = generate_slots(rule, day, occupied, now, lead_minutes=lead, cap_policy=policy)
                    count = _upsert_summary(db, practitioner_id, day, grid, len(occupied), computed_at)
            except (SQLAlchemyError, ValueError, TypeError) as exc:
                result.failures.append(RefreshFailure(practitioner_id=practitioner_id, day=day, error=str(exc)))
                SWEEP_ROWS.labels(result="failed").inc()
                logger.warning(
                    "summary_refresh_failed",
                    practitioner_id=practitioner_id,
                    date=day.isoformat(),
                    error=str(exc),
                )
                continue
            written.append(count)
            result.updated += 1

        stale = or_(
            DailyAvailabilitySummary.day < first_day,
            DailyAvailabilitySummary.practitioner_id.not_in(practitioner_ids),
        )
        purged_keys = db.execute(
            select(DailyAvailabilitySummary.practitioner_id, DailyAvailabilitySummary.day).where(stale)
        ).all()
        purge = db.execute(delete(DailyAvailabilitySummary).where(stale))
        result.deleted = int(purge.rowcount or 0)
        db.commit()

        if cache is not None:
            for practitioner_id, day in purged_keys:
                cache.invalidate(practitioner_id, day)
            for count in written:
                cache.put(count)
            cache.remember_practitioners(practitioner_ids)

    SWEEP_ROWS.labels(result="updated").inc(result.updated)
    SWEEP_ROWS.labels(result="deleted").inc(result.deleted)
    SWEEP_DURATION.observe(_time.perf_counter() - started)
    result.finished_at = utc_now_naive()
    logger.info(
        "summary_sweep_finished",
        updated=result.updated,
        deleted=result.deleted,
        failed=len(result.failures),
        start=first_day.isoformat(),
        end=last_day.isoformat(),
    )
    return result


class RefreshScheduler:
    """Runs ``run_sweep`` on a daemon thread every ``interval_seconds``."""

    def __init__(self, session_factory, cache=None, interval_seconds: int = 86400, sweep=run_sweep):
        self.session_factory = session_factory
        self.cache = cache
        self.interval_seconds = max(1, int(interval_seconds))
        self._sweep = sweep
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_result: SweepResult | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def trigger(self, today: date | None = None) -> SweepResult:
        result = self._sweep(self.session_factory, self.cache, today)
        self.last_result = result
        return result

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.trigger()
            except SQLAlchemyError as exc:
                logger.error("summary_sweep_crashed", error=str(exc))
            self._stop.wait(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="clinicbook-refresh", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=timeout)

import time as _time
from datetime import date, datetime, time

from sqlalchemy import select

import clinicbook.refresh as refresh
from clinicbook.booking import BookingCoordinator
from clinicbook.core.cache import SummaryCache
from clinicbook.models import DailyAvailabilitySummary, Practitioner
from clinicbook.refresh import RefreshScheduler, run_sweep
from clinicbook.schedule import upsert_date_exception

from conftest import NOW, seed_practitioner

MONDAY = date(2024, 5, 6)


def _rows(session_factory):
    with session_factory() as db:
        rows = db.execute(
            select(DailyAvailabilitySummary).order_by(
                DailyAvailabilitySummary.practitioner_id, DailyAvailabilitySummary.day
            )
        ).scalars().all()
        return [
            (r.practitioner_id, r.day, r.total_slots, r.available_slots, r.booked_slots, r.is_off)
            for r in rows
        ]


def test_sweep_covers_every_bookable_day(session_factory):
    with session_factory() as db:
        practitioner = seed_practitioner(db)

    result = run_sweep(session_factory, now=NOW, horizon_days=28)

    assert result.ok
    assert result.updated == 29
    rows = {row[1]: row for row in _rows(session_factory)}
    assert rows[MONDAY] == (practitioner.id, MONDAY, 12, 12, 0, False)
    assert rows[date(2024, 5, 7)][2] == 0
    assert max(rows) == date(2024, 6, 3)


def test_sweep_twice_produces_identical_rows(session_factory):
    with session_factory() as db:
        seed_practitioner(db)

    run_sweep(session_factory, now=NOW, horizon_days=7)
    first = _rows(session_factory)
    run_sweep(session_factory, now=NOW, horizon_days=7)

    assert _rows(session_factory) == first


def test_sweep_reflects_bookings_and_off_days(session_factory):
    with session_factory() as db:
        practitioner = seed_practitioner(db)
        upsert_date_exception(db, practitioner.id, date(2024, 5, 13), "OFF")
        coordinator = BookingCoordinator(None, clock=lambda: NOW, lead_minutes=60, horizon_days=28)
        coordinator.create(db, practitioner.id, "P-1001", MONDAY, time(10, 0))

    run_sweep(session_factory, now=NOW, horizon_days=14)

    rows = {row[1]: row for row in _rows(session_factory)}
    assert rows[MONDAY][2:] == (12, 11, 1, False)
    assert rows[date(2024, 5, 13)][2:] == (0, 0, 0, True)


def test_sweep_deletes_rows_before_today(session_factory):
    with session_factory() as db:
        practitioner = seed_practitioner(db)
        db.add(DailyAvailabilitySummary(practitioner_id=practitioner.id, day=date(2024, 5, 1), total_slots=12))
        db.commit()

    result = run_sweep(session_factory, now=NOW, horizon_days=3)

    assert result.deleted == 1
    assert all(row[1] >= MONDAY for row in _rows(session_factory))


def test_one_failing_pair_does_not_abort_the_sweep(session_factory, monkeypatch):
    with session_factory() as db:
        seed_practitioner(db)

    real_generate = refresh.generate_slots
    broken_day = date(2024, 5, 8)

    def flaky_generate(rule, day, *args, **kwargs):
        if day == broken_day:
            raise ValueError("corrupt template")
        return real_generate(rule, day, *args, **kwargs)

    monkeypatch.setattr(refresh, "generate_slots", flaky_generate)

    result = run_sweep(session_factory, now=NOW, horizon_days=6)

    assert result.updated == 6
    assert [(f.day, f.error) for f in result.failures] == [(broken_day, "corrupt template")]
    report = result.failure_report()
    assert report.code == "PARTIAL_REFRESH_FAILURE"
    assert report.details["failures"][0]["date"] == "2024-05-08"
    assert broken_day not in {row[1] for row in _rows(session_factory)}


def test_sweep_writes_through_to_summary_cache(session_factory, tmp_path):
    with session_factory() as db:
        practitioner = seed_practitioner(db)
    cache = SummaryCache(session_factory, directory=str(tmp_path / "cache"), ttl_seconds=60)
    cache.start()
    try:
        run_sweep(session_factory, cache, now=NOW, horizon_days=2)
        cached = cache._disk().get(SummaryCache._key(practitioner.id, MONDAY))
    finally:
        cache.stop()

    assert cached is not None
    assert cached.available == 12


def test_scheduler_trigger_records_last_result(session_factory):
    with session_factory() as db:
        seed_practitioner(db)

    def sweep(factory, cache, today):
        return run_sweep(factory, cache, today, now=NOW, horizon_days=1)

    scheduler = RefreshScheduler(session_factory, interval_seconds=3600, sweep=sweep)
    result = scheduler.trigger()

    assert result.updated == 2
    assert scheduler.last_result is result


def test_scheduler_runs_in_background_until_stopped(session_factory):
    with session_factory() as db:
        seed_practitioner(db)

    calls = []

    def sweep(factory, cache, today):
        result = run_sweep(factory, cache, today, now=NOW, horizon_days=1)
        calls.append(result)
        return result

    scheduler = RefreshScheduler(session_factory, interval_seconds=3600, sweep=sweep)
    scheduler.start()
    try:
        for _ in range(100):
            if calls:
                break
            _time.sleep(0.05)
    finally:
        scheduler.stop()

    assert len(calls) == 1
    assert scheduler.running is False


def test_sweep_invalidates_cached_rows_it_purges(session_factory, tmp_path):
    with session_factory() as db:
        practitioner = seed_practitioner(db)
    cache = SummaryCache(session_factory, directory=str(tmp_path / "cache"), ttl_seconds=60)
    cache.start()
    try:
        run_sweep(session_factory, cache, now=NOW, horizon_days=1)
        assert cache.get_count(practitioner.id, MONDAY) is not None

        result = run_sweep(session_factory, cache, now=datetime(2024, 5, 7, 7, 0), horizon_days=1)
        purged = cache.get_count(practitioner.id, MONDAY)
    finally:
        cache.stop()

    assert result.deleted == 1
    assert purged is None


def test_sweep_drops_rows_of_deactivated_practitioner(session_factory, tmp_path):
    with session_factory() as db:
        kept = seed_practitioner(db, name="Dr. Kim")
        retired = seed_practitioner(db, name="Dr. Park")
    cache = SummaryCache(session_factory, directory=str(tmp_path / "cache"), ttl_seconds=60)
    cache.start()
    try:
        run_sweep(session_factory, cache, now=NOW, horizon_days=2)
        with session_factory() as db:
            db.get(Practitioner, retired.id).is_active = False
            db.commit()

        result = run_sweep(session_factory, cache, now=NOW, horizon_days=2)
        retired_range = cache.get_range(MONDAY, date(2024, 5, 8), practitioner_id=retired.id)
        everything = cache.get_range(MONDAY, date(2024, 5, 8))
        retired_count = cache.get_count(retired.id, MONDAY)
    finally:
        cache.stop()

    assert result.deleted == 3
    assert retired_range == []
    assert retired_count is None
    assert {entry.practitioner_id for entry in everything} == {kept.id}
    assert {row[0] for row in _rows(session_factory)} == {kept.id}


def test_sweep_updates_existing_row_in_place(session_factory):
    with session_factory() as db:
        practitioner = seed_practitioner(db)
        db.add(
            DailyAvailabilitySummary(
                practitioner_id=practitioner.id,
                day=MONDAY,
                total_slots=99,
                available_slots=99,
                booked_slots=7,
            )
        )
        db.commit()
        existing_id = db.execute(select(DailyAvailabilitySummary.id)).scalar_one()

    run_sweep(session_factory, now=NOW, horizon_days=0)

    with session_factory() as db:
        rows = db.execute(select(DailyAvailabilitySummary)).scalars().all()
        assert [(r.id, r.total_slots, r.available_slots, r.booked_slots) for r in rows] == [
            (existing_id, 12, 12, 0)
        ]


def test_sweep_for_explicit_day_uses_start_of_that_day_as_now(session_factory, monkeypatch):
    with session_factory() as db:
        practitioner = seed_practitioner(db)

    def wrong_clock():
        raise AssertionError("clock must not be read when a day is given")

    monkeypatch.setattr(refresh, "clinic_now", wrong_clock)

    result = run_sweep(session_factory, today=MONDAY, horizon_days=1, lead_minutes=60)

    assert result.ok
    rows = {row[1]: row for row in _rows(session_factory)}
    assert rows[MONDAY] == (practitioner.id, MONDAY, 12, 12, 0, False)
    assert set(rows) == {MONDAY, date(2024, 5, 7)}

from datetime import date

from sqlalchemy import delete

from clinicbook.core.cache import SummaryCache
from clinicbook.models import DailyAvailabilitySummary
from clinicbook.refresh import run_sweep

from conftest import NOW, seed_practitioner

MONDAY = date(2024, 5, 6)


def make_cache(session_factory, tmp_path):
    cache = SummaryCache(session_factory, directory=str(tmp_path / "summaries"), ttl_seconds=60)
    cache.start()
    return cache


def test_missing_summary_returns_none(session_factory, tmp_path):
    cache = make_cache(session_factory, tmp_path)
    try:
        assert cache.get_count(1, MONDAY) is None
    finally:
        cache.stop()


def test_get_count_reads_stored_summary(session_factory, tmp_path):
    with session_factory() as db:
        practitioner = seed_practitioner(db)
    run_sweep(session_factory, now=NOW, horizon_days=1)

    cache = make_cache(session_factory, tmp_path)
    try:
        count = cache.get_count(practitioner.id, MONDAY)
    finally:
        cache.stop()

    assert count.available == 12
    assert count.total == 12
    assert count.is_off is False
    assert count.as_dict()["date"] == "2024-05-06"


def test_cached_value_is_served_until_invalidated(session_factory, tmp_path):
    with session_factory() as db:
        practitioner = seed_practitioner(db)
    cache = make_cache(session_factory, tmp_path)
    try:
        run_sweep(session_factory, cache, now=NOW, horizon_days=1)
        with session_factory() as db:
            db.execute(delete(DailyAvailabilitySummary))
            db.commit()

        assert cache.get_count(practitioner.id, MONDAY).available == 12

        cache.invalidate(practitioner.id, MONDAY)
        assert cache.get_count(practitioner.id, MONDAY) is None
    finally:
        cache.stop()


def test_get_range_filters_by_practitioner(session_factory, tmp_path):
    with session_factory() as db:
        first = seed_practitioner(db, name="Dr. Kim")
        second = seed_practitioner(db, name="Dr. Park")
    run_sweep(session_factory, now=NOW, horizon_days=2)

    cache = make_cache(session_factory, tmp_path)
    try:
        everything = cache.get_range(MONDAY, date(2024, 5, 8))
        only_second = cache.get_range(MONDAY, date(2024, 5, 8), practitioner_id=second.id)
    finally:
        cache.stop()

    assert len(everything) == 6
    assert {entry.practitioner_id for entry in only_second} == {second.id}
    assert [entry.day for entry in only_second] == [MONDAY, date(2024, 5, 7), date(2024, 5, 8)]
    assert first.id != second.id


def test_get_range_serves_swept_entries_from_cache(session_factory, tmp_path):
    with session_factory() as db:
        first = seed_practitioner(db, name="Dr. Kim")
        second = seed_practitioner(db, name="Dr. Park")
    cache = make_cache(session_factory, tmp_path)
    try:
        run_sweep(session_factory, cache, now=NOW, horizon_days=1)
        with session_factory() as db:
            db.execute(delete(DailyAvailabilitySummary))
            db.commit()

        entries = cache.get_range(MONDAY, date(2024, 5, 7))
    finally:
        cache.stop()

    assert [(entry.day, entry.practitioner_id) for entry in entries] == [
        (MONDAY, first.id),
        (MONDAY, second.id),
        (date(2024, 5, 7), first.id),
        (date(2024, 5, 7), second.id),
    ]
    assert entries[0].available == 12


def test_reads_never_populate_the_cache(session_factory, tmp_path):
    with session_factory() as db:
        practitioner = seed_practitioner(db)
    run_sweep(session_factory, now=NOW, horizon_days=2)

    cache = make_cache(session_factory, tmp_path)
    try:
        assert len(cache.get_range(MONDAY, date(2024, 5, 8))) == 3
        assert cache.get_count(practitioner.id, MONDAY).available == 12
        stored = len(cache._disk())
    finally:
        cache.stop()

    assert stored == 0

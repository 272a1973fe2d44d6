from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from diskcache import Cache
from sqlalchemy import select

from ..models import DailyAvailabilitySummary

logger = structlog.get_logger("clinicbook.cache")

_PRACTITIONERS_KEY = "summary:practitioners"


@dataclass(frozen=True)
class SummaryCount:
    practitioner_id: int
    day: date
    total: int
    available: int
    booked: int
    is_off: bool
    computed_at: datetime

    @classmethod
    def from_row(cls, row: DailyAvailabilitySummary) -> "SummaryCount":
        return cls(
            practitioner_id=int(row.practitioner_id),
            day=row.day,
            total=int(row.total_slots),
            available=int(row.available_slots),
            booked=int(row.booked_slots),
            is_off=bool(row.is_off),
            computed_at=row.computed_at,
        )

    def as_dict(self) -> dict:
        return {
            "practitioner_id": self.practitioner_id,
            "date": self.day.isoformat(),
            "total_slots": self.total,
            "available_slots": self.available,
            "booked_slots": self.booked,
            "is_off": self.is_off,
            "computed_at": self.computed_at.isoformat(),
        }


class SummaryCache:
    """
    Disk cache in front of the daily summary table. Reads never write back.

    Values are advisory: they are only ever written by the refresh sweep, so
    a hit may be stale by up to one sweep interval. Nothing here recomputes a
    grid, and booking decisions never read from it.
    """

    def __init__(self, session_factory, directory: str = "./.cache/summaries", ttl_seconds: int = 300):
        self.session_factory = session_factory
        self.directory = directory
        self.ttl_seconds = max(1, int(ttl_seconds))
        self._cache: Cache | None = None

    @staticmethod
    def _key(practitioner_id: int, day: date) -> str:
        return f"summary:{int(practitioner_id)}:{day.isoformat()}"

    @property
    def running(self) -> bool:
        return self._cache is not None

    def start(self) -> None:
        if self._cache is None:
            self._cache = Cache(self.directory)

    def stop(self) -> None:
        cache, self._cache = self._cache, None
        if cache is not None:
            cache.close()

    def _disk(self) -> Cache:
        if self._cache is None:
            self.start()
        return self._cache

    def put(self, row: DailyAvailabilitySummary | SummaryCount) -> SummaryCount:
        value = row if isinstance(row, SummaryCount) else SummaryCount.from_row(row)
        self._disk().set(self._key(value.practitioner_id, value.day), value, expire=self.ttl_seconds)
        return value

    def invalidate(self, practitioner_id: int, day: date) -> None:
        self._disk().delete(self._key(practitioner_id, day))

    def clear(self) -> None:
        self._disk().clear()

    def get_count(self, practitioner_id: int, day: date) -> SummaryCount | None:
        """Cached count for one day, falling back to the stored summary row; None if never computed."""
        cached = self._disk().get(self._key(practitioner_id, day))
        if cached is not None:
            return cached

        with self.session_factory() as db:
            row = db.execute(
                select(DailyAvailabilitySummary).where(
                    DailyAvailabilitySummary.practitioner_id == practitioner_id,
                    DailyAvailabilitySummary.day == day,
                )
            ).scalar_one_or_none()
            return SummaryCount.from_row(row) if row is not None else None

    def remember_practitioners(self, practitioner_ids) -> None:
        ids = sorted({int(pid) for pid in practitioner_ids})
        self._disk().set(_PRACTITIONERS_KEY, ids, expire=self.ttl_seconds)

    def _load_range(self, start_day: date, end_day: date, practitioner_ids=None) -> list[SummaryCount]:
        with self.session_factory() as db:
            stmt = select(DailyAvailabilitySummary).where(
                DailyAvailabilitySummary.day >= start_day,
                DailyAvailabilitySummary.day <= end_day,
            )
            if practitioner_ids is not None:
                stmt = stmt.where(DailyAvailabilitySummary.practitioner_id.in_(practitioner_ids))
            rows = db.execute(stmt).scalars().all()
            return [SummaryCount.from_row(row) for row in rows]

    def get_range(
        self,
        start_day: date,
        end_day: date,
        practitioner_id: int | None = None,
    ) -> list[SummaryCount]:
        """
        Counts for every stored (practitioner, day) pair in [start_day, end_day].

        Cached entries are served as-is. The table is queried once for the
        remaining pairs, and those rows are not written back.
        """
        disk = self._disk()
        if practitioner_id is not None:
            ids = [int(practitioner_id)]
        else:
            ids = disk.get(_PRACTITIONERS_KEY)

        found: dict[tuple[int, date], SummaryCount] = {}
        misses = 0
        if ids is None:
            misses = 1
        else:
            day = start_day
            while day <= end_day:
                for pid in ids:
                    cached = disk.get(self._key(pid, day))
                    if cached is None:
                        misses += 1
                    else:
                        found[(pid, day)] = cached
                day += timedelta(days=1)

        if misses:
            for count in self._load_range(start_day, end_day, ids):
                found.setdefault((count.practitioner_id, count.day), count)

        out = [found[key] for key in sorted(found, key=lambda key: (key[1], key[0]))]
        logger.debug(
            "summary_range_read",
            start=start_day.isoformat(),
            end=end_day.isoformat(),
            rows=len(out),
            cache_misses=misses,
        )
        return out

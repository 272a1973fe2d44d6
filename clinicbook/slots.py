"""
Slot grid generation.

Everything in this module is pure: no database access, no clock reads. The
caller resolves the day's rule, looks up occupied times and passes ``now``.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable

RULE_TEMPLATE = "TEMPLATE"
RULE_CUSTOM = "CUSTOM"
RULE_OFF = "OFF"
RULE_NONE = "NONE"

CAP_BLANK_DAY = "blank_day"
CAP_IGNORE = "ignore"
CAP_POLICIES = {CAP_BLANK_DAY, CAP_IGNORE}


@dataclass(frozen=True)
class DayRule:
    kind: str
    start: time | None = None
    end: time | None = None
    interval_minutes: int | None = None
    daily_max: int | None = None

    @classmethod
    def off(cls) -> "DayRule":
        return cls(kind=RULE_OFF)

    @classmethod
    def not_working(cls) -> "DayRule":
        return cls(kind=RULE_NONE)

    @property
    def is_off(self) -> bool:
        return self.kind == RULE_OFF

    @property
    def is_working(self) -> bool:
        return (
            self.kind in (RULE_TEMPLATE, RULE_CUSTOM)
            and self.start is not None
            and self.end is not None
            and int(self.interval_minutes or 0) > 0
        )


@dataclass(frozen=True)
class Slot:
    time: time
    available: bool

    def as_dict(self) -> dict:
        return {"time": format_hhmm(self.time), "available": self.available}


@dataclass(frozen=True)
class SlotGrid:
    day: date
    slots: tuple[Slot, ...] = ()
    is_off: bool = False

    @property
    def total_count(self) -> int:
        return len(self.slots)

    @property
    def available_count(self) -> int:
        return sum(1 for s in self.slots if s.available)

    def has_time(self, value: time) -> bool:
        return any(s.time == value for s in self.slots)

    def is_available(self, value: time) -> bool:
        return any(s.time == value and s.available for s in self.slots)


def parse_hhmm(value: str) -> time:
    """Parse a zero-padded "HH:MM" string. Raises ValueError when malformed."""
    raw = (value or "").strip()
    if len(raw) != 5 or raw[2] != ":":
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    return time(int(raw[:2]), int(raw[3:]))


def format_hhmm(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def candidate_times(rule: DayRule) -> list[time]:
    if not rule.is_working:
        return []
    step = int(rule.interval_minutes)
    end = _minutes(rule.end)
    out: list[time] = []
    cursor = _minutes(rule.start)
    while cursor < end:
        out.append(time(cursor // 60, cursor % 60))
        cursor += step
    return out


def count_candidates(rule: DayRule) -> int:
    return len(candidate_times(rule))


def generate_slots(
    rule: DayRule,
    day: date,
    active_times: Iterable[time],
    now: datetime,
    *,
    lead_minutes: int = 0,
    cap_policy: str = CAP_BLANK_DAY,
) -> SlotGrid:
    """Build the ordered availability grid for one practitioner and day.

    ``now`` is wall-clock time in the clinic's timezone; tz info is ignored.
    ``active_times`` holds the start times of the day's active reservations,
    including any that fall outside the generated grid (they still count
    toward ``daily_max``).
    """
    if rule.is_off:
        return SlotGrid(day=day, slots=(), is_off=True)

    candidates = candidate_times(rule)
    if not candidates:
        return SlotGrid(day=day)

    occupied = set(active_times)
    cap_reached = (
        cap_policy == CAP_BLANK_DAY
        and rule.daily_max is not None
        and len(occupied) >= int(rule.daily_max)
    )

    local_now = now.replace(tzinfo=None)
    day_closed = day < local_now.date()
    cutoff = None
    if day == local_now.date():
        cutoff = local_now + timedelta(minutes=max(0, int(lead_minutes)))

    slots = []
    for value in candidates:
        available = not (day_closed or cap_reached or value in occupied)
        if available and cutoff is not None and datetime.combine(day, value) < cutoff:
            available = False
        slots.append(Slot(time=value, available=available))
    return SlotGrid(day=day, slots=tuple(slots))

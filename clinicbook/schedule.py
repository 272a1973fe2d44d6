from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .models import (
    EXCEPTION_CUSTOM,
    EXCEPTION_OFF,
    DateException,
    Practitioner,
    WeeklyTemplate,
)
from .slots import RULE_CUSTOM, RULE_TEMPLATE, DayRule

EXCEPTION_KINDS = {EXCEPTION_OFF, EXCEPTION_CUSTOM}


def clinic_now() -> datetime:
    """Naive wall-clock time in the clinic's timezone."""
    return datetime.now(ZoneInfo(settings.CLINIC_TIMEZONE)).replace(tzinfo=None)


def get_practitioner(db: Session, practitioner_id: int) -> Practitioner | None:
    return db.execute(
        select(Practitioner).where(Practitioner.id == practitioner_id)
    ).scalar_one_or_none()


def list_active_practitioners(db: Session) -> list[Practitioner]:
    return (
        db.execute(
            select(Practitioner)
            .where(Practitioner.is_active.is_(True))
            .order_by(Practitioner.id.asc())
        )
        .scalars()
        .all()
    )


def _rule_from_template(template: WeeklyTemplate | None) -> DayRule:
    if template is None or not bool(template.is_active):
        return DayRule.not_working()
    return DayRule(
        kind=RULE_TEMPLATE,
        start=template.start_time,
        end=template.end_time,
        interval_minutes=int(template.slot_interval_minutes),
        daily_max=template.daily_max,
    )


def _rule_from_exception(row: DateException) -> DayRule:
    if row.kind == EXCEPTION_OFF:
        return DayRule.off()
    if row.custom_start is None or row.custom_end is None:
        # A CUSTOM exception without hours still supersedes the template.
        return DayRule.not_working()
    return DayRule(
        kind=RULE_CUSTOM,
        start=row.custom_start,
        end=row.custom_end,
        interval_minutes=int(row.custom_interval_minutes or settings.DEFAULT_SLOT_INTERVAL_MINUTES),
    )


def resolve_rule(db: Session, practitioner_id: int, day: date) -> DayRule:
    """Exception for the date if present, else the weekday template, else not working."""
    exception = db.execute(
        select(DateException).where(
            DateException.practitioner_id == practitioner_id,
            DateException.day == day,
        )
    ).scalar_one_or_none()
    if exception is not None:
        return _rule_from_exception(exception)

    template = db.execute(
        select(WeeklyTemplate).where(
            WeeklyTemplate.practitioner_id == practitioner_id,
            WeeklyTemplate.weekday == day.weekday(),
            WeeklyTemplate.is_active.is_(True),
        )
    ).scalar_one_or_none()
    return _rule_from_template(template)


def load_rules_for_range(
    db: Session,
    practitioner_ids: list[int],
    start_day: date,
    end_day: date,
) -> dict[tuple[int, date], DayRule]:
    """Resolve every (practitioner, day) in the range with one query per table."""
    if not practitioner_ids:
        return {}

    templates = (
        db.execute(
            select(WeeklyTemplate).where(
                WeeklyTemplate.practitioner_id.in_(practitioner_ids),
                WeeklyTemplate.is_active.is_(True),
            )
        )
        .scalars()
        .all()
    )
    by_weekday = {(int(t.practitioner_id), int(t.weekday)): t for t in templates}

    exceptions = (
        db.execute(
            select(DateException).where(
                DateException.practitioner_id.in_(practitioner_ids),
                DateException.day >= start_day,
                DateException.day <= end_day,
            )
        )
        .scalars()
        .all()
    )
    by_day = {(int(e.practitioner_id), e.day): e for e in exceptions}

    out: dict[tuple[int, date], DayRule] = {}
    for practitioner_id in practitioner_ids:
        cursor = start_day
        while cursor <= end_day:
            override = by_day.get((practitioner_id, cursor))
            if override is not None:
                out[(practitioner_id, cursor)] = _rule_from_exception(override)
            else:
                out[(practitioner_id, cursor)] = _rule_from_template(
                    by_weekday.get((practitioner_id, cursor.weekday()))
                )
            cursor += timedelta(days=1)
    return out


def upsert_practitioner(
    db: Session,
    name: str,
    department: str | None = None,
    is_active: bool = True,
) -> Practitioner:
    normalized_name = name.strip()
    row = db.execute(
        select(Practitioner).where(Practitioner.name == normalized_name)
    ).scalar_one_or_none()
    if row is None:
        row = Practitioner(name=normalized_name)
        db.add(row)
    row.department = (department or "").strip() or None
    row.is_active = bool(is_active)
    db.commit()
    db.refresh(row)
    return row


def upsert_weekly_template(
    db: Session,
    practitioner_id: int,
    weekday: int,
    start_time: time,
    end_time: time,
    slot_interval_minutes: int | None = None,
    daily_max: int | None = None,
    is_active: bool = True,
) -> WeeklyTemplate:
    if not 0 <= int(weekday) <= 6:
        raise ValueError("weekday must be between 0 and 6")
    if end_time <= start_time:
        raise ValueError("end_time must be after start_time")

    row = db.execute(
        select(WeeklyTemplate).where(
            WeeklyTemplate.practitioner_id == practitioner_id,
            WeeklyTemplate.weekday == int(weekday),
        )
    ).scalar_one_or_none()
    if row is None:
        row = WeeklyTemplate(practitioner_id=practitioner_id, weekday=int(weekday))
        db.add(row)

    row.start_time = start_time
    row.end_time = end_time
    row.slot_interval_minutes = int(slot_interval_minutes or settings.DEFAULT_SLOT_INTERVAL_MINUTES)
    row.daily_max = int(daily_max) if daily_max else None
    row.is_active = bool(is_active)
    db.commit()
    db.refresh(row)
    return row


def upsert_date_exception(
    db: Session,
    practitioner_id: int,
    day: date,
    kind: str,
    custom_start: time | None = None,
    custom_end: time | None = None,
    custom_interval_minutes: int | None = None,
    reason: str | None = None,
) -> DateException:
    normalized_kind = (kind or "").strip().upper()
    if normalized_kind not in EXCEPTION_KINDS:
        raise ValueError("Invalid exception kind")
    if normalized_kind == EXCEPTION_CUSTOM:
        if custom_start is None or custom_end is None:
            raise ValueError("CUSTOM exception requires custom_start and custom_end")
        if custom_end <= custom_start:
            raise ValueError("custom_end must be after custom_start")

    row = db.execute(
        select(DateException).where(
            DateException.practitioner_id == practitioner_id,
            DateException.day == day,
        )
    ).scalar_one_or_none()
    if row is None:
        row = DateException(practitioner_id=practitioner_id, day=day)
        db.add(row)

    row.kind = normalized_kind
    row.reason = (reason or "").strip() or None
    if normalized_kind == EXCEPTION_OFF:
        row.custom_start = None
        row.custom_end = None
        row.custom_interval_minutes = None
    else:
        row.custom_start = custom_start
        row.custom_end = custom_end
        row.custom_interval_minutes = int(custom_interval_minutes) if custom_interval_minutes else None
    db.commit()
    db.refresh(row)
    return row

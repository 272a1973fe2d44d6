from collections import defaultdict
from datetime import date, time

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import ACTIVE_STATUSES, Reservation


def active_times(db: Session, practitioner_id: int, day: date) -> set[time]:
    """Start times held by active reservations committed before this read."""
    rows = db.execute(
        select(Reservation.time).where(
            Reservation.practitioner_id == practitioner_id,
            Reservation.day == day,
            Reservation.status.in_(ACTIVE_STATUSES),
        )
    ).scalars()
    return set(rows)


def active_count(db: Session, practitioner_id: int, day: date) -> int:
    return int(
        db.execute(
            select(func.count(Reservation.id)).where(
                Reservation.practitioner_id == practitioner_id,
                Reservation.day == day,
                Reservation.status.in_(ACTIVE_STATUSES),
            )
        ).scalar_one()
    )


def active_times_in_range(
    db: Session,
    start_day: date,
    end_day: date,
    practitioner_ids: list[int] | None = None,
) -> dict[tuple[int, date], set[time]]:
    stmt = select(Reservation.practitioner_id, Reservation.day, Reservation.time).where(
        Reservation.day >= start_day,
        Reservation.day <= end_day,
        Reservation.status.in_(ACTIVE_STATUSES),
    )
    if practitioner_ids is not None:
        stmt = stmt.where(Reservation.practitioner_id.in_(practitioner_ids))

    out: dict[tuple[int, date], set[time]] = defaultdict(set)
    for practitioner_id, day, value in db.execute(stmt).all():
        out[(int(practitioner_id), day)].add(value)
    return dict(out)

from datetime import date, datetime, timezone
from datetime import time as dt_time

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

STATUS_REQUESTED = "REQUESTED"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"
STATUS_DECLINED = "DECLINED"
STATUS_NO_SHOW = "NO_SHOW"

RESERVATION_STATUSES = {
    STATUS_REQUESTED,
    STATUS_CONFIRMED,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
    STATUS_DECLINED,
    STATUS_NO_SHOW,
}
ACTIVE_STATUSES = (STATUS_REQUESTED, STATUS_CONFIRMED)

EXCEPTION_OFF = "OFF"
EXCEPTION_CUSTOM = "CUSTOM"

_ACTIVE_SLOT_WHERE = text("status IN ('REQUESTED', 'CONFIRMED')")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Practitioner(Base):
    __tablename__ = "practitioners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), index=True)
    department: Mapped[str | None] = mapped_column(String(120), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class WeeklyTemplate(Base):
    __tablename__ = "weekly_templates"
    __table_args__ = (
        UniqueConstraint("practitioner_id", "weekday", name="uq_weekly_templates_practitioner_weekday"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    practitioner_id: Mapped[int] = mapped_column(ForeignKey("practitioners.id"), index=True)
    weekday: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[dt_time] = mapped_column(Time)
    end_time: Mapped[dt_time] = mapped_column(Time)
    slot_interval_minutes: Mapped[int] = mapped_column(Integer, default=15)
    daily_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class DateException(Base):
    __tablename__ = "date_exceptions"
    __table_args__ = (
        UniqueConstraint("practitioner_id", "day", name="uq_date_exceptions_practitioner_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    practitioner_id: Mapped[int] = mapped_column(ForeignKey("practitioners.id"), index=True)
    day: Mapped[date] = mapped_column(Date, index=True)
    kind: Mapped[str] = mapped_column(String(16), default=EXCEPTION_OFF)
    custom_start: Mapped[dt_time | None] = mapped_column(Time, nullable=True)
    custom_end: Mapped[dt_time | None] = mapped_column(Time, nullable=True)
    custom_interval_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(300), nullable=True)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "uq_reservations_active_slot",
            "practitioner_id",
            "day",
            "time",
            unique=True,
            sqlite_where=_ACTIVE_SLOT_WHERE,
            postgresql_where=_ACTIVE_SLOT_WHERE,
        ),
        Index("ix_reservations_practitioner_day_status", "practitioner_id", "day", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    practitioner_id: Mapped[int] = mapped_column(ForeignKey("practitioners.id"), index=True)
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    day: Mapped[date] = mapped_column(Date, index=True)
    time: Mapped[dt_time] = mapped_column(Time)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_REQUESTED, index=True)
    memo: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    practitioner = relationship("Practitioner")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class ReservationStatusEvent(Base):
    __tablename__ = "reservation_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reservation_id: Mapped[int] = mapped_column(ForeignKey("reservations.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16))
    action: Mapped[str] = mapped_column(String(40), default="status_update")
    actor: Mapped[str | None] = mapped_column(String(120), nullable=True)
    note: Mapped[str | None] = mapped_column(String(300), nullable=True)


class DailyAvailabilitySummary(Base):
    __tablename__ = "daily_availability_summaries"
    __table_args__ = (
        UniqueConstraint("practitioner_id", "day", name="uq_daily_summaries_practitioner_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    practitioner_id: Mapped[int] = mapped_column(ForeignKey("practitioners.id"), index=True)
    day: Mapped[date] = mapped_column(Date, index=True)
    total_slots: Mapped[int] = mapped_column(Integer, default=0)
    available_slots: Mapped[int] = mapped_column(Integer, default=0)
    booked_slots: Mapped[int] = mapped_column(Integer, default=0)
    is_off: Mapped[bool] = mapped_column(Boolean, default=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

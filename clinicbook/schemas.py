from datetime import date, datetime, time

from pydantic import BaseModel, Field, field_validator

from .slots import parse_hhmm


def _hhmm(value) -> time:
    if isinstance(value, time):
        return value
    try:
        return parse_hhmm(str(value))
    except ValueError as exc:
        raise ValueError("time must be HH:MM") from exc


class SlotOut(BaseModel):
    time: str
    available: bool


class SlotGridOut(BaseModel):
    practitioner_id: int
    date: date
    is_off: bool
    total: int
    available: int
    slots: list[SlotOut]


class ReservationCreate(BaseModel):
    practitioner_id: int = Field(gt=0)
    patient_id: str = Field(min_length=1, max_length=64)
    day: date
    time: time

    @field_validator("time", mode="before")
    @classmethod
    def parse_time(cls, value):
        return _hhmm(value)


class ReservationReschedule(BaseModel):
    day: date
    time: time

    @field_validator("time", mode="before")
    @classmethod
    def parse_time(cls, value):
        return _hhmm(value)


class ReservationCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=300)


class ReservationDecline(BaseModel):
    reason: str | None = Field(default=None, max_length=300)


class ReservationStatusUpdate(BaseModel):
    status: str
    reason: str | None = Field(default=None, max_length=300)


class ReservationOut(BaseModel):
    id: int
    practitioner_id: int
    patient_id: str
    day: date
    time: str
    status: str
    memo: str | None = None
    created_at: datetime
    updated_at: datetime


class CancelOut(BaseModel):
    already_processed: bool
    reservation: ReservationOut | None = None


class ReservationStatusEventOut(BaseModel):
    id: int
    reservation_id: int
    from_status: str | None = None
    to_status: str
    action: str
    actor: str | None = None
    note: str | None = None
    created_at: datetime


class DaySummaryOut(BaseModel):
    date: date
    total_slots: int
    available_slots: int
    booked_slots: int
    practitioners: dict[str, int]
    off_practitioners: list[int] = Field(default_factory=list)


class PractitionerDaySummaryOut(BaseModel):
    practitioner_id: int
    date: date
    total_slots: int
    available_slots: int
    booked_slots: int
    is_off: bool
    computed_at: datetime
    advisory: bool = True


class CalendarSummaryOut(BaseModel):
    start: date
    end: date
    advisory: bool = True
    days: list[DaySummaryOut]


class RefreshOut(BaseModel):
    updated: int
    deleted: int
    failures: list[dict]
    started_at: datetime | None = None
    finished_at: datetime | None = None

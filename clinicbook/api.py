from collections import OrderedDict
from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from .booking import BookingCoordinator, get_reservation, list_reservation_status_events
from .config import settings
from .core.cache import SummaryCache
from .db import get_db
from .errors import BookingError, NotFoundError, ValidationError
from .models import STATUS_COMPLETED, STATUS_NO_SHOW, Reservation
from .refresh import RefreshScheduler
from .schemas import (
    CalendarSummaryOut,
    CancelOut,
    DaySummaryOut,
    PractitionerDaySummaryOut,
    RefreshOut,
    ReservationCancel,
    ReservationCreate,
    ReservationDecline,
    ReservationOut,
    ReservationReschedule,
    ReservationStatusEventOut,
    ReservationStatusUpdate,
    SlotGridOut,
    SlotOut,
)
from .slots import format_hhmm

router = APIRouter(prefix="/api")
admin_router = APIRouter(prefix="/api/admin")

MAX_CALENDAR_RANGE_DAYS = 62
CALENDAR_CACHE_CONTROL = "public, max-age=30"


def get_coordinator(request: Request) -> BookingCoordinator:
    return request.app.state.coordinator


def get_summary_cache(request: Request) -> SummaryCache:
    return request.app.state.summary_cache


def get_refresh_scheduler(request: Request) -> RefreshScheduler:
    return request.app.state.refresh_scheduler


def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    expected = (settings.ADMIN_API_KEY or "").strip()
    if expected and (x_admin_key or "").strip() != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")


def _to_reservation_out(reservation: Reservation) -> ReservationOut:
    return ReservationOut(
        id=reservation.id,
        practitioner_id=reservation.practitioner_id,
        patient_id=reservation.patient_id,
        day=reservation.day,
        time=format_hhmm(reservation.time),
        status=reservation.status,
        memo=reservation.memo,
        created_at=reservation.created_at,
        updated_at=reservation.updated_at,
    )


@router.get("/practitioners/{practitioner_id}/slots", response_model=SlotGridOut)
def list_slots(
    practitioner_id: int,
    day: date = Query(...),
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    try:
        grid = coordinator.list_slots(db, practitioner_id, day)
    except BookingError as exc:
        raise exc.to_http_exception()
    return SlotGridOut(
        practitioner_id=practitioner_id,
        date=grid.day,
        is_off=grid.is_off,
        total=grid.total_count,
        available=grid.available_count,
        slots=[SlotOut(**slot.as_dict()) for slot in grid.slots],
    )


@router.get("/practitioners/{practitioner_id}/summary", response_model=PractitionerDaySummaryOut)
def practitioner_day_summary(
    practitioner_id: int,
    response: Response,
    day: date = Query(...),
    cache: SummaryCache = Depends(get_summary_cache),
):
    count = cache.get_count(practitioner_id, day)
    if count is None:
        raise NotFoundError(
            "No summary has been computed for this day",
            details={"practitioner_id": practitioner_id, "date": day.isoformat()},
        ).to_http_exception()
    response.headers["Cache-Control"] = CALENDAR_CACHE_CONTROL
    return PractitionerDaySummaryOut(**count.as_dict())


@router.post("/reservations", response_model=ReservationOut, status_code=status.HTTP_201_CREATED)
def create_reservation(
    payload: ReservationCreate,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
    x_actor: Optional[str] = Header(default=None),
):
    try:
        reservation = coordinator.create(
            db,
            practitioner_id=payload.practitioner_id,
            patient_id=payload.patient_id,
            day=payload.day,
            slot_time=payload.time,
            actor=x_actor,
        )
    except BookingError as exc:
        raise exc.to_http_exception()
    return _to_reservation_out(reservation)


@router.get("/reservations/{reservation_id}", response_model=ReservationOut)
def read_reservation(reservation_id: int, db: Session = Depends(get_db)):
    reservation = get_reservation(db, reservation_id)
    if reservation is None:
        raise NotFoundError("Reservation not found", details={"reservation_id": reservation_id}).to_http_exception()
    return _to_reservation_out(reservation)


@router.post("/reservations/{reservation_id}/cancel", response_model=CancelOut)
def cancel_reservation(
    reservation_id: int,
    payload: ReservationCancel | None = None,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
    x_actor: Optional[str] = Header(default=None),
):
    reason = payload.reason if payload else None
    try:
        result = coordinator.cancel(db, reservation_id, actor=x_actor, reason=reason)
    except BookingError as exc:
        raise exc.to_http_exception()
    return CancelOut(
        already_processed=result.already_processed,
        reservation=_to_reservation_out(result.reservation) if result.reservation else None,
    )


@router.post("/reservations/{reservation_id}/reschedule", response_model=ReservationOut)
def reschedule_reservation(
    reservation_id: int,
    payload: ReservationReschedule,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
    x_actor: Optional[str] = Header(default=None),
):
    try:
        reservation = coordinator.reschedule(db, reservation_id, payload.day, payload.time, actor=x_actor)
    except BookingError as exc:
        raise exc.to_http_exception()
    return _to_reservation_out(reservation)


@router.get("/reservations/{reservation_id}/history", response_model=list[ReservationStatusEventOut])
def reservation_status_history(reservation_id: int, db: Session = Depends(get_db)):
    if get_reservation(db, reservation_id) is None:
        raise NotFoundError("Reservation not found", details={"reservation_id": reservation_id}).to_http_exception()

    rows = list_reservation_status_events(db, reservation_id)
    return [
        ReservationStatusEventOut(
            id=row.id,
            reservation_id=row.reservation_id,
            from_status=row.from_status,
            to_status=row.to_status,
            action=row.action,
            actor=row.actor,
            note=row.note,
            created_at=row.created_at,
        )
        for row in rows
    ]


@router.get("/calendar/summary", response_model=CalendarSummaryOut)
def calendar_summary(
    response: Response,
    start: date = Query(...),
    end: date = Query(...),
    practitioner_id: Optional[int] = Query(default=None),
    cache: SummaryCache = Depends(get_summary_cache),
):
    if end < start:
        raise ValidationError("end must not be before start").to_http_exception()
    if (end - start) > timedelta(days=MAX_CALENDAR_RANGE_DAYS):
        raise ValidationError(
            f"Range is limited to {MAX_CALENDAR_RANGE_DAYS} days",
            details={"start": start.isoformat(), "end": end.isoformat()},
        ).to_http_exception()

    by_day: "OrderedDict[date, DaySummaryOut]" = OrderedDict()
    for entry in cache.get_range(start, end, practitioner_id=practitioner_id):
        bucket = by_day.get(entry.day)
        if bucket is None:
            bucket = DaySummaryOut(
                date=entry.day,
                total_slots=0,
                available_slots=0,
                booked_slots=0,
                practitioners={},
            )
            by_day[entry.day] = bucket
        bucket.total_slots += entry.total
        bucket.available_slots += entry.available
        bucket.booked_slots += entry.booked
        bucket.practitioners[str(entry.practitioner_id)] = entry.available
        if entry.is_off:
            bucket.off_practitioners.append(entry.practitioner_id)

    response.headers["Cache-Control"] = CALENDAR_CACHE_CONTROL
    return CalendarSummaryOut(start=start, end=end, advisory=True, days=list(by_day.values()))


@admin_router.post(
    "/reservations/{reservation_id}/approve",
    response_model=ReservationOut,
    dependencies=[Depends(require_admin_key)],
)
def approve_reservation(
    reservation_id: int,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
    x_actor: Optional[str] = Header(default=None),
):
    try:
        reservation = coordinator.approve(db, reservation_id, actor=x_actor or "admin")
    except BookingError as exc:
        raise exc.to_http_exception()
    return _to_reservation_out(reservation)


@admin_router.post(
    "/reservations/{reservation_id}/decline",
    response_model=ReservationOut,
    dependencies=[Depends(require_admin_key)],
)
def decline_reservation(
    reservation_id: int,
    payload: ReservationDecline | None = None,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
    x_actor: Optional[str] = Header(default=None),
):
    reason = payload.reason if payload else None
    try:
        reservation = coordinator.decline(db, reservation_id, reason=reason, actor=x_actor or "admin")
    except BookingError as exc:
        raise exc.to_http_exception()
    return _to_reservation_out(reservation)


@admin_router.post(
    "/reservations/{reservation_id}/status",
    response_model=ReservationOut,
    dependencies=[Depends(require_admin_key)],
)
def update_reservation_status(
    reservation_id: int,
    payload: ReservationStatusUpdate,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
    x_actor: Optional[str] = Header(default=None),
):
    target = (payload.status or "").strip().upper()
    try:
        if target not in {STATUS_COMPLETED, STATUS_NO_SHOW}:
            raise ValidationError("status must be COMPLETED or NO_SHOW", details={"status": payload.status})
        reservation = coordinator.change_status(
            db, reservation_id, target, actor=x_actor or "admin", reason=payload.reason
        )
    except BookingError as exc:
        raise exc.to_http_exception()
    return _to_reservation_out(reservation)


@admin_router.post("/summaries/refresh", response_model=RefreshOut, dependencies=[Depends(require_admin_key)])
def refresh_summaries(
    response: Response,
    scheduler: RefreshScheduler = Depends(get_refresh_scheduler),
):
    result = scheduler.trigger()
    if not result.ok:
        response.status_code = status.HTTP_207_MULTI_STATUS
    return RefreshOut(**result.as_dict())

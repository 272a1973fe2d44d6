from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.metrics_ext import BOOKING_OUTCOMES
from .errors import (
    AlreadyProcessedError,
    HorizonExceededError,
    LeadTimeViolation,
    NotFoundError,
    PastDateError,
    PractitionerInactiveError,
    SlotUnavailableError,
    ValidationError,
)
from .models import (
    ACTIVE_STATUSES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_DECLINED,
    STATUS_NO_SHOW,
    STATUS_REQUESTED,
    Reservation,
    ReservationStatusEvent,
    utc_now_naive,
)
from .notifications import (
    EVENT_CANCELLED,
    EVENT_CREATED,
    EVENT_RESCHEDULED,
    EVENT_STATUS_CHANGED,
    BroadcastEvent,
)
from .occupancy import active_count, active_times
from .schedule import clinic_now, get_practitioner, resolve_rule
from .slots import DayRule, SlotGrid, format_hhmm, generate_slots

logger = structlog.get_logger("clinicbook.booking")

ALLOWED_STATUS_TRANSITIONS = {
    STATUS_REQUESTED: {STATUS_CONFIRMED, STATUS_DECLINED, STATUS_CANCELLED},
    STATUS_CONFIRMED: {STATUS_COMPLETED, STATUS_CANCELLED, STATUS_NO_SHOW},
    STATUS_COMPLETED: set(),
    STATUS_CANCELLED: set(),
    STATUS_DECLINED: set(),
    STATUS_NO_SHOW: set(),
}
ADMIN_STATUS_TARGETS = {STATUS_CONFIRMED, STATUS_DECLINED, STATUS_COMPLETED, STATUS_NO_SHOW}


@dataclass(frozen=True)
class CancelResult:
    reservation: Reservation | None
    already_processed: bool


def add_reservation_status_event(
    db: Session,
    reservation_id: int,
    from_status: str | None,
    to_status: str,
    action: str = "status_update",
    actor: str | None = None,
    note: str | None = None,
) -> ReservationStatusEvent:
    event = ReservationStatusEvent(
        reservation_id=reservation_id,
        from_status=from_status,
        to_status=to_status,
        action=action,
        actor=(actor or "").strip() or None,
        note=(note or "").strip()[:300] or None,
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def get_reservation(db: Session, reservation_id: int) -> Reservation | None:
    return db.execute(
        select(Reservation).where(Reservation.id == reservation_id)
    ).scalar_one_or_none()


def list_reservation_status_events(db: Session, reservation_id: int) -> list[ReservationStatusEvent]:
    return (
        db.execute(
            select(ReservationStatusEvent)
            .where(ReservationStatusEvent.reservation_id == reservation_id)
            .order_by(ReservationStatusEvent.created_at.asc(), ReservationStatusEvent.id.asc())
        )
        .scalars()
        .all()
    )


class BookingCoordinator:
    """Create, cancel, reschedule and status transitions for reservations.

    Slot exclusivity is enforced by the partial unique index on active
    reservations, so the availability check and the insert commit as one unit
    and a lost race surfaces as SlotUnavailableError. The summary cache is
    never consulted here; every decision re-derives the grid from storage.
    """

    def __init__(
        self,
        notifier=None,
        *,
        clock: Callable[[], datetime] = clinic_now,
        lead_minutes: int | None = None,
        horizon_days: int | None = None,
        cap_policy: str | None = None,
        auto_confirm: bool | None = None,
    ):
        self.notifier = notifier
        self.clock = clock
        self.lead_minutes = int(settings.BOOKING_MIN_LEAD_MINUTES if lead_minutes is None else lead_minutes)
        self.horizon_days = int(settings.BOOKING_HORIZON_DAYS if horizon_days is None else horizon_days)
        self.cap_policy = (cap_policy or settings.DAILY_CAP_POLICY).strip().lower()
        self.auto_confirm = bool(settings.AUTO_CONFIRM_BOOKINGS if auto_confirm is None else auto_confirm)

    # -- queries -----------------------------------------------------------

    def check_window(self, day: date, today: date) -> None:
        if day < today:
            raise PastDateError("Date is in the past", details={"date": day.isoformat()})
        last_day = today + timedelta(days=self.horizon_days)
        if day > last_day:
            raise HorizonExceededError(
                f"Bookings open at most {self.horizon_days} days ahead",
                details={"date": day.isoformat(), "last_bookable_date": last_day.isoformat()},
            )

    def _require_practitioner(self, db: Session, practitioner_id: int):
        practitioner = get_practitioner(db, practitioner_id)
        if practitioner is None:
            raise NotFoundError("Practitioner not found", details={"practitioner_id": practitioner_id})
        if not bool(practitioner.is_active):
            raise PractitionerInactiveError(
                "Practitioner is not accepting bookings", details={"practitioner_id": practitioner_id}
            )
        return practitioner

    def build_grid(
        self,
        db: Session,
        practitioner_id: int,
        day: date,
        now: datetime,
        rule: DayRule | None = None,
        occupied: set[time] | None = None,
    ) -> SlotGrid:
        resolved = rule or resolve_rule(db, practitioner_id, day)
        taken = active_times(db, practitioner_id, day) if occupied is None else occupied
        return generate_slots(
            resolved,
            day,
            taken,
            now,
            lead_minutes=self.lead_minutes,
            cap_policy=self.cap_policy,
        )

    def list_slots(self, db: Session, practitioner_id: int, day: date) -> SlotGrid:
        self._require_practitioner(db, practitioner_id)
        now = self.clock()
        self.check_window(day, now.date())
        return self.build_grid(db, practitioner_id, day, now)

    # -- admission ---------------------------------------------------------

    def _admit(
        self,
        db: Session,
        practitioner_id: int,
        day: date,
        slot_time: time,
        now: datetime,
        released_time: time | None = None,
    ) -> DayRule:
        """Run every pre-write check for booking ``slot_time``; returns the day's rule."""
        self.check_window(day, now.date())

        rule = resolve_rule(db, practitioner_id, day)
        occupied = active_times(db, practitioner_id, day)
        if released_time is not None:
            occupied.discard(released_time)
        grid = self.build_grid(db, practitioner_id, day, now, rule=rule, occupied=occupied)

        details = {"practitioner_id": practitioner_id, "date": day.isoformat(), "time": format_hhmm(slot_time)}
        if grid.is_off or not grid.has_time(slot_time):
            raise SlotUnavailableError("Time is not on the practitioner's schedule", details=details)
        if day == now.date() and datetime.combine(day, slot_time) < now + timedelta(minutes=self.lead_minutes):
            raise LeadTimeViolation(
                f"Same-day bookings need at least {self.lead_minutes} minutes notice", details=details
            )
        if rule.daily_max is not None and len(occupied) >= int(rule.daily_max):
            raise SlotUnavailableError("Daily booking capacity reached", details=details)
        if not grid.is_available(slot_time):
            raise SlotUnavailableError("Slot is already taken", details=details)
        return rule

    def _enforce_daily_cap(self, db: Session, rule: DayRule, practitioner_id: int, day: date) -> None:
        if rule.daily_max is None:
            return
        # Re-count inside the transaction; a concurrent booking for another time may have landed.
        if active_count(db, practitioner_id, day) > int(rule.daily_max):
            raise SlotUnavailableError(
                "Daily booking capacity reached",
                details={"practitioner_id": practitioner_id, "date": day.isoformat()},
            )

    # -- commands ----------------------------------------------------------

    def create(
        self,
        db: Session,
        practitioner_id: int,
        patient_id: str,
        day: date,
        slot_time: time,
        actor: str | None = None,
    ) -> Reservation:
        normalized_patient = (patient_id or "").strip()
        if not normalized_patient:
            raise ValidationError("patient_id is required")

        self._require_practitioner(db, practitioner_id)
        now = self.clock()
        try:
            rule = self._admit(db, practitioner_id, day, slot_time, now)
        except SlotUnavailableError:
            BOOKING_OUTCOMES.labels(operation="create", outcome="slot_unavailable").inc()
            raise

        status = STATUS_CONFIRMED if self.auto_confirm else STATUS_REQUESTED
        reservation = Reservation(
            practitioner_id=practitioner_id,
            patient_id=normalized_patient,
            day=day,
            time=slot_time,
            status=status,
            created_at=utc_now_naive(),
            updated_at=utc_now_naive(),
        )
        db.add(reservation)
        try:
            db.flush()
            self._enforce_daily_cap(db, rule, practitioner_id, day)
            add_reservation_status_event(
                db,
                reservation_id=reservation.id,
                from_status=None,
                to_status=status,
                action="created",
                actor=actor or normalized_patient,
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            BOOKING_OUTCOMES.labels(operation="create", outcome="conflict").inc()
            logger.info(
                "booking_conflict",
                practitioner_id=practitioner_id,
                date=day.isoformat(),
                time=format_hhmm(slot_time),
            )
            raise SlotUnavailableError(
                "Slot was booked by someone else",
                details={"practitioner_id": practitioner_id, "date": day.isoformat(), "time": format_hhmm(slot_time)},
            )
        except SlotUnavailableError:
            db.rollback()
            BOOKING_OUTCOMES.labels(operation="create", outcome="slot_unavailable").inc()
            raise

        db.refresh(reservation)
        BOOKING_OUTCOMES.labels(operation="create", outcome="ok").inc()
        logger.info(
            "booking_created",
            reservation_id=reservation.id,
            practitioner_id=practitioner_id,
            patient_id=normalized_patient,
            date=day.isoformat(),
            time=format_hhmm(slot_time),
            status=status,
        )
        self._notify(EVENT_CREATED, reservation)
        return reservation

    def _swap_status(
        self,
        db: Session,
        reservation: Reservation,
        to_status: str,
        memo: str | None = None,
    ) -> bool:
        """Compare-and-swap the status; False when another writer got there first."""
        values = {"status": to_status, "updated_at": utc_now_naive()}
        if memo is not None:
            values["memo"] = memo[:300]
        result = db.execute(
            update(Reservation)
            .where(Reservation.id == reservation.id, Reservation.status == reservation.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return False
        return True

    def cancel(
        self,
        db: Session,
        reservation_id: int,
        actor: str | None = None,
        reason: str | None = None,
    ) -> CancelResult:
        today = self.clock().date()
        for _ in range(2):
            reservation = get_reservation(db, reservation_id)
            if reservation is None or reservation.status in (STATUS_CANCELLED, STATUS_DECLINED):
                BOOKING_OUTCOMES.labels(operation="cancel", outcome="already_processed").inc()
                return CancelResult(reservation=reservation, already_processed=True)
            if reservation.status not in ACTIVE_STATUSES:
                raise AlreadyProcessedError(
                    f"Reservation is already {reservation.status}",
                    details={"reservation_id": reservation_id, "status": reservation.status},
                )
            if reservation.day < today:
                raise PastDateError(
                    "Past reservations cannot be cancelled",
                    details={"reservation_id": reservation_id, "date": reservation.day.isoformat()},
                )

            from_status = reservation.status
            if not self._swap_status(db, reservation, STATUS_CANCELLED, memo=reason):
                continue
            add_reservation_status_event(
                db,
                reservation_id=reservation.id,
                from_status=from_status,
                to_status=STATUS_CANCELLED,
                action="cancelled",
                actor=actor,
                note=reason,
            )
            db.commit()
            db.refresh(reservation)
            BOOKING_OUTCOMES.labels(operation="cancel", outcome="ok").inc()
            logger.info("booking_cancelled", reservation_id=reservation.id, from_status=from_status)
            self._notify(EVENT_CANCELLED, reservation)
            return CancelResult(reservation=reservation, already_processed=False)

        raise AlreadyProcessedError(
            "Reservation changed while cancelling; reload and retry",
            details={"reservation_id": reservation_id},
        )

    def reschedule(
        self,
        db: Session,
        reservation_id: int,
        new_day: date,
        new_time: time,
        actor: str | None = None,
    ) -> Reservation:
        """Cancel the old slot and claim the new one in a single transaction.

        If claiming the new slot fails the transaction is rolled back, so the
        original reservation keeps its slot and status.
        """
        reservation = get_reservation(db, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found", details={"reservation_id": reservation_id})
        if reservation.status not in ACTIVE_STATUSES:
            raise AlreadyProcessedError(
                f"Reservation is already {reservation.status}",
                details={"reservation_id": reservation_id, "status": reservation.status},
            )
        now = self.clock()
        if reservation.day < now.date():
            raise PastDateError(
                "Past reservations cannot be rescheduled",
                details={"reservation_id": reservation_id, "date": reservation.day.isoformat()},
            )
        if reservation.day == new_day and reservation.time == new_time:
            return reservation

        practitioner_id = int(reservation.practitioner_id)
        self._require_practitioner(db, practitioner_id)
        released = reservation.time if reservation.day == new_day else None
        try:
            rule = self._admit(db, practitioner_id, new_day, new_time, now, released_time=released)
        except SlotUnavailableError:
            BOOKING_OUTCOMES.labels(operation="reschedule", outcome="slot_unavailable").inc()
            raise

        old_status = reservation.status
        if not self._swap_status(db, reservation, STATUS_CANCELLED, memo="Rescheduled"):
            raise AlreadyProcessedError(
                "Reservation changed while rescheduling; reload and retry",
                details={"reservation_id": reservation_id},
            )

        replacement = Reservation(
            practitioner_id=practitioner_id,
            patient_id=reservation.patient_id,
            day=new_day,
            time=new_time,
            status=old_status,
            memo=f"Rescheduled from #{reservation.id}",
            created_at=utc_now_naive(),
            updated_at=utc_now_naive(),
        )
        db.add(replacement)
        try:
            db.flush()
            self._enforce_daily_cap(db, rule, practitioner_id, new_day)
            add_reservation_status_event(
                db,
                reservation_id=reservation.id,
                from_status=old_status,
                to_status=STATUS_CANCELLED,
                action="rescheduled_out",
                actor=actor,
                note=f"Moved to #{replacement.id}",
            )
            add_reservation_status_event(
                db,
                reservation_id=replacement.id,
                from_status=None,
                to_status=old_status,
                action="rescheduled_in",
                actor=actor,
                note=f"Moved from #{reservation.id}",
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            BOOKING_OUTCOMES.labels(operation="reschedule", outcome="conflict").inc()
            raise SlotUnavailableError(
                "Slot was booked by someone else",
                details={
                    "practitioner_id": practitioner_id,
                    "date": new_day.isoformat(),
                    "time": format_hhmm(new_time),
                },
            )
        except SlotUnavailableError:
            db.rollback()
            BOOKING_OUTCOMES.labels(operation="reschedule", outcome="slot_unavailable").inc()
            raise

        db.refresh(replacement)
        BOOKING_OUTCOMES.labels(operation="reschedule", outcome="ok").inc()
        logger.info(
            "booking_rescheduled",
            old_reservation_id=reservation.id,
            reservation_id=replacement.id,
            date=new_day.isoformat(),
            time=format_hhmm(new_time),
        )
        self._notify(EVENT_RESCHEDULED, replacement)
        return replacement

    def change_status(
        self,
        db: Session,
        reservation_id: int,
        new_status: str,
        actor: str | None = None,
        reason: str | None = None,
    ) -> Reservation:
        target = (new_status or "").strip().upper()
        if target == STATUS_CANCELLED:
            result = self.cancel(db, reservation_id, actor=actor, reason=reason)
            if result.reservation is None:
                raise NotFoundError("Reservation not found", details={"reservation_id": reservation_id})
            return result.reservation
        if target not in ADMIN_STATUS_TARGETS:
            raise ValidationError("Invalid reservation status", details={"status": new_status})

        reservation = get_reservation(db, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found", details={"reservation_id": reservation_id})

        current = reservation.status
        if target == current:
            return reservation
        if target not in ALLOWED_STATUS_TRANSITIONS.get(current, set()):
            raise AlreadyProcessedError(
                f"Invalid status transition: {current} -> {target}",
                details={"reservation_id": reservation_id, "status": current},
            )

        memo = None
        if target == STATUS_DECLINED:
            memo = (reason or "").strip() or "Declined by administrator"
        if not self._swap_status(db, reservation, target, memo=memo):
            raise AlreadyProcessedError(
                "Reservation changed concurrently; reload and retry",
                details={"reservation_id": reservation_id},
            )
        add_reservation_status_event(
            db,
            reservation_id=reservation.id,
            from_status=current,
            to_status=target,
            action="status_update",
            actor=actor,
            note=memo or reason,
        )
        db.commit()
        db.refresh(reservation)
        BOOKING_OUTCOMES.labels(operation="status", outcome="ok").inc()
        logger.info("booking_status_changed", reservation_id=reservation.id, from_status=current, to_status=target)
        self._notify(EVENT_STATUS_CHANGED, reservation)
        return reservation

    def approve(self, db: Session, reservation_id: int, actor: str | None = None) -> Reservation:
        return self.change_status(db, reservation_id, STATUS_CONFIRMED, actor=actor)

    def decline(
        self,
        db: Session,
        reservation_id: int,
        reason: str | None = None,
        actor: str | None = None,
    ) -> Reservation:
        return self.change_status(db, reservation_id, STATUS_DECLINED, actor=actor, reason=reason)

    def mark_completed(self, db: Session, reservation_id: int, actor: str | None = None) -> Reservation:
        return self.change_status(db, reservation_id, STATUS_COMPLETED, actor=actor)

    def mark_no_show(self, db: Session, reservation_id: int, actor: str | None = None) -> Reservation:
        return self.change_status(db, reservation_id, STATUS_NO_SHOW, actor=actor)

    def _notify(self, kind: str, reservation: Reservation) -> None:
        if self.notifier is None:
            return
        # The returned future is dropped; dispatch outcome is logged by the notifier.
        self.notifier.submit(BroadcastEvent.for_reservation(kind, reservation))

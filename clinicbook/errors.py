"""
Booking engine errors.

Policy and validation errors are raised before any write. SlotUnavailableError
is the one error expected under normal concurrent load; clients should re-fetch
the grid and retry with another time.
"""

from typing import Any

from fastapi import HTTPException, status


class BookingError(Exception):
    """Base class for errors surfaced to API callers with a reason code."""

    code = "BOOKING_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


class ValidationError(BookingError):
    code = "VALIDATION_ERROR"


class NotFoundError(BookingError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class PastDateError(BookingError):
    code = "PAST_DATE"


class HorizonExceededError(BookingError):
    code = "HORIZON_EXCEEDED"


class LeadTimeViolation(BookingError):
    code = "LEAD_TIME_VIOLATION"


class PractitionerInactiveError(BookingError):
    code = "PRACTITIONER_INACTIVE"


class SlotUnavailableError(BookingError):
    code = "SLOT_UNAVAILABLE"
    status_code = status.HTTP_409_CONFLICT
    retryable = True


class AlreadyProcessedError(BookingError):
    code = "ALREADY_PROCESSED"
    status_code = status.HTTP_409_CONFLICT


class PartialRefreshFailure(BookingError):
    """Aggregate of per-item sweep failures. Reported, never raised by the sweep."""

    code = "PARTIAL_REFRESH_FAILURE"
    status_code = status.HTTP_207_MULTI_STATUS

    def __init__(self, failures: list) -> None:
        self.failures = list(failures)
        super().__init__(
            f"{len(self.failures)} summary rows failed to refresh",
            details={"failures": [f.as_dict() for f in self.failures]},
        )

"""
Domain error hierarchy for the reservation engine.

Every error carries a stable machine-readable `code` and the HTTP status the
API layer maps it to. Services raise these; they never raise HTTPException,
because the same code paths run from the background sweeper.
"""


class BookingError(Exception):
    """Base exception for all reservation engine errors."""

    code = "booking_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(BookingError):
    code = "not_found"
    status_code = 404


class InstanceNotBookable(BookingError):
    """Class instance is cancelled, already started, or otherwise closed."""

    code = "instance_not_bookable"
    status_code = 409


class ClassFull(InstanceNotBookable):
    """No seat left and the studio has the waitlist disabled."""

    code = "class_full"


class CapacityExhausted(InstanceNotBookable):
    """No seat left at check-in time (walk-ins never join the waitlist)."""

    code = "capacity_exhausted"


class WalkInNotAllowed(InstanceNotBookable):
    code = "walk_in_not_allowed"


class DuplicateReservation(BookingError):
    code = "duplicate_reservation"
    status_code = 409


class EntitlementRequired(BookingError):
    """No pass, credit or subscription applies and no payment was supplied."""

    code = "entitlement_required"
    status_code = 402


class PaymentDeclined(BookingError):
    code = "payment_declined"
    status_code = 402


class NoDropInPlanConfigured(BookingError):
    """The studio sells no drop-in; callers fall back to standard booking."""

    code = "no_drop_in_plan_configured"
    status_code = 422


class CancellationWindowClosed(BookingError):
    """Informational: the cancellation is late. Selects the late-cancel reason."""

    code = "cancellation_window_closed"
    status_code = 200


class PromotionExpired(BookingError):
    code = "promotion_expired"
    status_code = 410


class InvalidTransition(BookingError):
    code = "invalid_transition"
    status_code = 409


class ConfirmationWindowNotOpen(BookingError):
    code = "confirmation_window_not_open"
    status_code = 409


class CheckInNotOpen(BookingError):
    code = "check_in_not_open"
    status_code = 409


class ClassNotInProgress(BookingError):
    """Staff tried to complete a class that has not started or was cancelled."""

    code = "class_not_in_progress"
    status_code = 409


class Conflict(BookingError):
    """Optimistic concurrency retries exhausted."""

    code = "conflict"
    status_code = 409

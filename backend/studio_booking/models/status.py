"""
Reservation state machine.

Status is a closed enum and TRANSITIONS is the complete table of legal moves.
apply_transition() is the only function that assigns Reservation.status;
everything else asks it to fire an event and gets InvalidTransition back
when the move is not in the table.

    requested --book--> booked --confirm--> confirmed
    requested --waitlist--> waitlisted --promote--> promoted --accept--> booked
    booked/confirmed --check_in--> checked_in
    booked/confirmed --cancel--> cancelled
    booked/confirmed --mark_no_show--> no_show
    waitlisted/promoted --cancel--> cancelled
    waitlisted/promoted --expire--> expired --requeue--> waitlisted
"""

import enum
from datetime import datetime

from studio_booking.core.exceptions import InvalidTransition


class ClassStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ReservationStatus(str, enum.Enum):
    REQUESTED = "requested"  # transient, never persisted
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    WAITLISTED = "waitlisted"
    PROMOTED = "promoted"
    EXPIRED = "expired"


class ReservationEvent(str, enum.Enum):
    BOOK = "book"
    WAITLIST = "waitlist"
    PROMOTE = "promote"
    ACCEPT = "accept"
    CONFIRM = "confirm"
    CHECK_IN = "check_in"
    CANCEL = "cancel"
    MARK_NO_SHOW = "mark_no_show"
    EXPIRE = "expire"
    REQUEUE = "requeue"


class CancellationReason(str, enum.Enum):
    MEMBER_INITIATED = "member_initiated"
    LATE_CANCEL = "late_cancel"
    STAFF_CANCEL = "staff_cancel"
    CLASS_CANCELLED = "class_cancelled"


S = ReservationStatus
E = ReservationEvent

TRANSITIONS: dict[ReservationStatus, dict[ReservationEvent, ReservationStatus]] = {
    S.REQUESTED: {E.BOOK: S.BOOKED, E.WAITLIST: S.WAITLISTED},
    S.BOOKED: {
        E.CONFIRM: S.CONFIRMED,
        E.CHECK_IN: S.CHECKED_IN,
        E.CANCEL: S.CANCELLED,
        E.MARK_NO_SHOW: S.NO_SHOW,
    },
    S.CONFIRMED: {
        E.CHECK_IN: S.CHECKED_IN,
        E.CANCEL: S.CANCELLED,
        E.MARK_NO_SHOW: S.NO_SHOW,
    },
    S.WAITLISTED: {E.PROMOTE: S.PROMOTED, E.CANCEL: S.CANCELLED, E.EXPIRE: S.EXPIRED},
    S.PROMOTED: {E.ACCEPT: S.BOOKED, E.CANCEL: S.CANCELLED, E.EXPIRE: S.EXPIRED},
    S.EXPIRED: {E.REQUEUE: S.WAITLISTED},
    S.CHECKED_IN: {},
    S.CANCELLED: {},
    S.NO_SHOW: {},
}

# Statuses counted against max_capacity
SEATED_STATUSES = frozenset({S.BOOKED, S.CONFIRMED, S.CHECKED_IN})

# Statuses that free the member to book the same class again
INACTIVE_STATUSES = frozenset({S.CANCELLED, S.NO_SHOW, S.EXPIRED})

LIVE_STATUSES = frozenset(set(ReservationStatus) - INACTIVE_STATUSES - {S.REQUESTED})


def next_status(current: ReservationStatus, event: ReservationEvent) -> ReservationStatus:
    target = TRANSITIONS[current].get(event)
    if target is None:
        raise InvalidTransition(f"Cannot {event.value} a reservation that is {current.value}")
    return target


def apply_transition(reservation, event: ReservationEvent, at: datetime) -> ReservationStatus:
    """Move `reservation` along `event`, stamping the matching timestamp."""
    target = next_status(reservation.status, event)

    if event is E.CONFIRM:
        reservation.confirmed_at = at
    elif event is E.CANCEL:
        reservation.cancelled_at = at
    elif event is E.PROMOTE:
        reservation.promoted_at = at
    elif event is E.CHECK_IN:
        reservation.checked_in_at = at

    if target is not S.WAITLISTED:
        reservation.waitlist_position = None
    if target is not S.PROMOTED:
        reservation.promotion_deadline = None

    reservation.status = target
    return target

"""
Tests for the reservation state machine table.
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from studio_booking.core.exceptions import InvalidTransition
from studio_booking.db.base import utcnow
from studio_booking.models.status import (
    INACTIVE_STATUSES,
    LIVE_STATUSES,
    SEATED_STATUSES,
    TRANSITIONS,
    ReservationEvent as E,
    ReservationStatus as S,
    apply_transition,
    next_status,
)


def make_reservation(status: S, **fields):
    values = dict(
        status=status,
        waitlist_position=None,
        promotion_deadline=None,
        confirmed_at=None,
        cancelled_at=None,
        promoted_at=None,
        checked_in_at=None,
    )
    values.update(fields)
    return SimpleNamespace(**values)


@pytest.mark.parametrize(
    "current,event,target",
    [
        (S.REQUESTED, E.BOOK, S.BOOKED),
        (S.REQUESTED, E.WAITLIST, S.WAITLISTED),
        (S.BOOKED, E.CONFIRM, S.CONFIRMED),
        (S.BOOKED, E.CHECK_IN, S.CHECKED_IN),
        (S.CONFIRMED, E.CHECK_IN, S.CHECKED_IN),
        (S.BOOKED, E.MARK_NO_SHOW, S.NO_SHOW),
        (S.CONFIRMED, E.CANCEL, S.CANCELLED),
        (S.WAITLISTED, E.PROMOTE, S.PROMOTED),
        (S.PROMOTED, E.ACCEPT, S.BOOKED),
        (S.PROMOTED, E.EXPIRE, S.EXPIRED),
        (S.EXPIRED, E.REQUEUE, S.WAITLISTED),
    ],
)
def test_legal_transitions(current, event, target):
    assert next_status(current, event) is target


@pytest.mark.parametrize(
    "current,event",
    [
        (S.WAITLISTED, E.CHECK_IN),
        (S.WAITLISTED, E.CONFIRM),
        (S.PROMOTED, E.CHECK_IN),
        (S.CHECKED_IN, E.CANCEL),
        (S.CANCELLED, E.BOOK),
        (S.NO_SHOW, E.CHECK_IN),
        (S.BOOKED, E.ACCEPT),
        (S.EXPIRED, E.ACCEPT),
    ],
)
def test_illegal_transitions_raise(current, event):
    with pytest.raises(InvalidTransition):
        next_status(current, event)


def test_terminal_statuses_have_no_way_out():
    for status in (S.CHECKED_IN, S.CANCELLED, S.NO_SHOW):
        assert TRANSITIONS[status] == {}


def test_status_groups_partition_persisted_statuses():
    assert SEATED_STATUSES <= LIVE_STATUSES
    assert not (LIVE_STATUSES & INACTIVE_STATUSES)
    assert S.REQUESTED not in LIVE_STATUSES
    assert LIVE_STATUSES | INACTIVE_STATUSES == set(S) - {S.REQUESTED}


def test_promote_stamps_time_and_clears_position():
    now = utcnow()
    reservation = make_reservation(S.WAITLISTED, waitlist_position=0)

    apply_transition(reservation, E.PROMOTE, now)

    assert reservation.status is S.PROMOTED
    assert reservation.promoted_at == now
    assert reservation.waitlist_position is None


def test_accept_clears_promotion_deadline():
    now = utcnow()
    reservation = make_reservation(S.PROMOTED, promotion_deadline=now + timedelta(hours=2))

    apply_transition(reservation, E.ACCEPT, now)

    assert reservation.status is S.BOOKED
    assert reservation.promotion_deadline is None


def test_failed_transition_leaves_reservation_untouched():
    reservation = make_reservation(S.WAITLISTED, waitlist_position=3)

    with pytest.raises(InvalidTransition):
        apply_transition(reservation, E.CHECK_IN, utcnow())

    assert reservation.status is S.WAITLISTED
    assert reservation.waitlist_position == 3
    assert reservation.checked_in_at is None

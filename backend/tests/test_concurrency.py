"""
Concurrency tests: many members racing for the same class.

Every attempt runs on its own session (its own connection), so the
versioned ledger write is what keeps the class from overbooking.
"""

import asyncio

import pytest
from sqlalchemy import func, select

from studio_booking.core.exceptions import Conflict, DuplicateReservation
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import SEATED_STATUSES, ReservationStatus
from studio_booking.services.context import Actor
from studio_booking.services.reservation_service import cancel, reserve


async def _reserve_in_own_session(session_factory, ctx, class_instance_id, member_id):
    async with session_factory() as session:
        return await reserve(session, ctx, class_instance_id, member_id)


@pytest.mark.asyncio
async def test_last_seats_race(session_factory, ctx, make_class, grant, counts):
    """Capacity 2, three members at once: two booked, one waitlisted at position 0."""
    instance = await make_class(max_capacity=2)
    class_id = instance.id
    for member_id in (1, 2, 3):
        await grant(member_id)

    results = await asyncio.gather(
        *(_reserve_in_own_session(session_factory, ctx, class_id, m) for m in (1, 2, 3))
    )

    statuses = sorted(r.status.value for r in results)
    assert statuses == ["booked", "booked", "waitlisted"]
    waitlisted = [r for r in results if r.status is ReservationStatus.WAITLISTED]
    assert waitlisted[0].waitlist_position == 0
    assert await counts(class_id) == (2, 0, 1)


@pytest.mark.asyncio
async def test_never_overbooks_under_load(session_factory, db_session, ctx, make_class, grant, counts):
    """Booked never exceeds capacity and the waitlist stays dense, whatever wins."""
    instance = await make_class(max_capacity=3)
    class_id = instance.id
    members = list(range(1, 9))
    for member_id in members:
        await grant(member_id)

    results = await asyncio.gather(
        *(_reserve_in_own_session(session_factory, ctx, class_id, m) for m in members),
        return_exceptions=True,
    )

    # Losing every retry is allowed; anything else is a bug
    failures = [r for r in results if isinstance(r, BaseException)]
    assert all(isinstance(f, Conflict) for f in failures)

    result = await db_session.execute(
        select(func.count(Reservation.id)).where(
            Reservation.class_instance_id == class_id,
            Reservation.status.in_(SEATED_STATUSES),
        )
    )
    seated = result.scalar_one()
    result = await db_session.execute(
        select(Reservation.waitlist_position)
        .where(
            Reservation.class_instance_id == class_id,
            Reservation.status == ReservationStatus.WAITLISTED,
        )
        .order_by(Reservation.waitlist_position)
    )
    positions = list(result.scalars().all())

    assert seated <= 3
    assert positions == list(range(len(positions)))
    assert seated + len(positions) == len(members) - len(failures)
    assert await counts(class_id) == (seated, 0, len(positions))


@pytest.mark.asyncio
async def test_same_member_double_submit(session_factory, ctx, make_class, grant, counts):
    """Two copies of one member's request: exactly one reservation survives."""
    instance = await make_class(max_capacity=5)
    class_id = instance.id
    await grant(1)

    results = await asyncio.gather(
        _reserve_in_own_session(session_factory, ctx, class_id, 1),
        _reserve_in_own_session(session_factory, ctx, class_id, 1),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, Reservation)]
    rejected = [r for r in results if isinstance(r, DuplicateReservation)]
    assert len(created) == 1
    assert len(rejected) == 1
    assert await counts(class_id) == (1, 0, 0)


@pytest.mark.asyncio
async def test_concurrent_cancellations_promote_distinct_members(session_factory, db_session, ctx, make_class, grant, counts):
    """Two seats freed at once go to the first two waitlisted members, one each."""
    instance = await make_class(max_capacity=2)
    class_id = instance.id
    reservations = {}
    for member_id in (1, 2, 3, 4, 5):
        await grant(member_id)
        reservations[member_id] = await reserve(db_session, ctx, class_id, member_id)
    booked_ids = [reservations[1].id, reservations[2].id]

    async def cancel_in_own_session(reservation_id, member_id):
        async with session_factory() as session:
            return await cancel(session, ctx, reservation_id, Actor.member(member_id))

    await asyncio.gather(cancel_in_own_session(booked_ids[0], 1), cancel_in_own_session(booked_ids[1], 2))

    result = await db_session.execute(
        select(Reservation)
        .where(Reservation.class_instance_id == class_id)
        .order_by(Reservation.member_id)
        .execution_options(populate_existing=True)
    )
    by_member = {r.member_id: r for r in result.scalars().all()}
    assert by_member[3].status is ReservationStatus.PROMOTED
    assert by_member[4].status is ReservationStatus.PROMOTED
    assert by_member[5].status is ReservationStatus.WAITLISTED
    assert by_member[5].waitlist_position == 0
    assert await counts(class_id) == (0, 2, 1)

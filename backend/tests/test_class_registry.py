"""
Tests for class instance ingest, capacity changes and whole-class cancellation.
"""

from datetime import timedelta

import pytest

from studio_booking.core.exceptions import InstanceNotBookable, NotFound
from studio_booking.db.base import utcnow
from studio_booking.models.entitlement import EntitlementKind, MemberEntitlement
from studio_booking.models.status import CancellationReason, ClassStatus, ReservationStatus
from studio_booking.services.context import Actor
from studio_booking.services.interfaces.notifier import NotificationKind
from studio_booking.services.registry_service import (
    cancel_class_instance,
    change_capacity,
    get_class_instance,
    upsert_class_instance,
)
from studio_booking.services.reservation_service import cancel, get_reservation, reserve


@pytest.mark.asyncio
async def test_ingest_creates_instance_and_ledger(db_session, ctx):
    starts_at = utcnow() + timedelta(days=1)

    instance = await upsert_class_instance(
        db_session, ctx, studio_id=3, starts_at=starts_at, ends_at=starts_at + timedelta(hours=1), max_capacity=12
    )

    stored, capacity = await get_class_instance(db_session, instance.id)
    assert stored.status is ClassStatus.SCHEDULED
    assert stored.starts_at == starts_at
    assert (capacity.booked_count, capacity.held_count, capacity.waitlist_count) == (0, 0, 0)
    assert capacity.swept_at is None


@pytest.mark.asyncio
async def test_ingest_resend_updates_in_place(db_session, ctx, make_class, grant, counts):
    """A re-sent instance with more seats promotes from the waitlist."""
    instance = await make_class(max_capacity=1)
    class_id = instance.id
    for member_id in (1, 2):
        await grant(member_id)
        await reserve(db_session, ctx, class_id, member_id)
    starts_at = utcnow() + timedelta(days=2, hours=1)

    updated = await upsert_class_instance(
        db_session,
        ctx,
        studio_id=1,
        starts_at=starts_at,
        ends_at=starts_at + timedelta(minutes=75),
        max_capacity=2,
        title="Yin",
        class_instance_id=class_id,
    )

    assert updated.id == class_id
    assert updated.max_capacity == 2
    stored, _ = await get_class_instance(db_session, class_id)
    assert stored.title == "Yin"
    assert stored.starts_at == starts_at
    assert await counts(class_id) == (1, 1, 0)


@pytest.mark.asyncio
async def test_unknown_class(db_session):
    with pytest.raises(NotFound):
        await get_class_instance(db_session, 9999)


@pytest.mark.asyncio
async def test_cancel_class_cancels_every_live_reservation(db_session, ctx, notifier, make_class, grant, counts):
    instance = await make_class(max_capacity=2)
    class_id = instance.id
    pack = await grant(1, kind=EntitlementKind.CLASS_PACK, remaining=4)
    pack_id = pack.id
    ids = {}
    for member_id in (1, 2, 3, 4):
        if member_id != 1:
            await grant(member_id)
        ids[member_id] = (await reserve(db_session, ctx, class_id, member_id)).id
    # Member 3 holds a promoted seat, member 4 is still waiting
    await cancel(db_session, ctx, ids[2], Actor.member(2))

    outcome = await cancel_class_instance(db_session, ctx, class_id)

    assert outcome.cancelled_reservations == 3
    assert outcome.instance.status is ClassStatus.CANCELLED
    for member_id in (1, 3, 4):
        reservation = await get_reservation(db_session, ids[member_id])
        assert reservation.status is ReservationStatus.CANCELLED
        assert reservation.cancellation_reason is CancellationReason.CLASS_CANCELLED
        assert reservation.waitlist_position is None
    assert (await get_reservation(db_session, ids[2])).cancellation_reason is CancellationReason.MEMBER_INITIATED
    assert await counts(class_id) == (0, 0, 0)

    refreshed = await db_session.get(MemberEntitlement, pack_id, populate_existing=True)
    assert refreshed.remaining == 4
    notified = {n.member_id for n in notifier.of_kind(NotificationKind.CLASS_CANCELLED)}
    assert notified == {1, 3, 4}


@pytest.mark.asyncio
async def test_cancel_class_twice_is_a_no_op(db_session, ctx, notifier, make_class, grant):
    instance = await make_class()
    class_id = instance.id
    await grant(1)
    await reserve(db_session, ctx, class_id, member_id=1)
    await cancel_class_instance(db_session, ctx, class_id)

    again = await cancel_class_instance(db_session, ctx, class_id)

    assert again.cancelled_reservations == 0
    assert len(notifier.of_kind(NotificationKind.CLASS_CANCELLED)) == 1


@pytest.mark.asyncio
async def test_cancelled_class_capacity_is_frozen(db_session, ctx, make_class):
    instance = await make_class()
    class_id = instance.id
    await cancel_class_instance(db_session, ctx, class_id)

    with pytest.raises(InstanceNotBookable):
        await change_capacity(db_session, ctx, class_id, 20)

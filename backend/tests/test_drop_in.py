"""
Tests for the drop-in booking saga (authorize, reserve, void on failure).
"""

from datetime import timedelta

import pytest

from studio_booking.core.exceptions import (
    ClassFull,
    DuplicateReservation,
    EntitlementRequired,
    PaymentDeclined,
)
from studio_booking.core.policy import StudioPolicy
from studio_booking.db.base import utcnow
from studio_booking.models.entitlement import EntitlementKind
from studio_booking.models.status import CancellationReason, ReservationStatus
from studio_booking.services.context import Actor, build_booking_context
from studio_booking.services.drop_in_service import book_drop_in
from studio_booking.services.policy_service import StaticPolicyStore
from studio_booking.services.promotion_service import expire_due_promotions
from studio_booking.services.queries import find_live_reservation
from studio_booking.services.registry_service import cancel_class_instance
from studio_booking.services.reservation_service import cancel, confirm, get_reservation, reserve


@pytest.fixture
def policy() -> StudioPolicy:
    return StudioPolicy(drop_in_price_cents=1500)


@pytest.mark.asyncio
async def test_drop_in_books_and_captures(db_session, ctx, payments, make_class, counts):
    instance = await make_class()
    class_id = instance.id

    reservation = await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")

    assert reservation.status is ReservationStatus.BOOKED
    assert reservation.entitlement_kind is EntitlementKind.DROP_IN
    assert reservation.entitlement_ref == "auth_1"
    assert payments.authorized[0].amount_cents == 1500
    assert payments.captured == ["auth_1"]
    assert payments.voided == []
    assert await counts(class_id) == (1, 0, 0)


@pytest.mark.asyncio
async def test_existing_entitlement_wins_and_hold_is_voided(db_session, ctx, payments, make_class, grant):
    instance = await make_class()
    await grant(2)

    reservation = await book_drop_in(db_session, ctx, instance.id, member_id=2, payment_method_id="pm_card")

    assert reservation.entitlement_kind is EntitlementKind.SUBSCRIPTION
    assert payments.voided == ["auth_1"]
    assert payments.captured == []


@pytest.mark.asyncio
async def test_declined_payment_books_nothing(db_session, ctx, payments, make_class, counts):
    instance = await make_class()
    class_id = instance.id
    payments.decline = True

    with pytest.raises(PaymentDeclined):
        await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")

    assert await find_live_reservation(db_session, class_id, 2) is None
    assert await counts(class_id) == (0, 0, 0)


@pytest.mark.asyncio
async def test_failed_reservation_voids_authorization(db_session, notifier, payments, make_class, grant):
    ctx = build_booking_context(
        notifier, payments, StaticPolicyStore(StudioPolicy(drop_in_price_cents=1500, waitlist_enabled=False))
    )
    instance = await make_class(max_capacity=1)
    class_id = instance.id
    await grant(1)
    await reserve(db_session, ctx, class_id, member_id=1)

    with pytest.raises(ClassFull):
        await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")

    assert payments.voided == ["auth_1"]
    assert payments.captured == []


@pytest.mark.asyncio
async def test_duplicate_is_rejected_before_charging(db_session, ctx, payments, make_class, grant):
    instance = await make_class()
    class_id = instance.id
    await grant(2)
    await reserve(db_session, ctx, class_id, member_id=2)

    with pytest.raises(DuplicateReservation):
        await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")

    assert payments.authorized == []


@pytest.mark.asyncio
async def test_waitlisted_drop_in_captured_on_acceptance(db_session, ctx, payments, make_class, grant):
    instance = await make_class(max_capacity=1)
    class_id = instance.id
    await grant(1)
    seat_holder = await reserve(db_session, ctx, class_id, member_id=1)

    waiting = await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")
    waiting_id = waiting.id
    assert waiting.status is ReservationStatus.WAITLISTED
    assert waiting.entitlement_kind is EntitlementKind.DROP_IN
    assert payments.captured == []

    await cancel(db_session, ctx, seat_holder.id, Actor.member(1))
    accepted = await confirm(db_session, ctx, waiting_id, member_id=2)

    assert accepted.status is ReservationStatus.BOOKED
    assert accepted.entitlement_ref == "auth_1"
    assert payments.captured == ["auth_1"]
    assert payments.voided == []


@pytest.mark.asyncio
async def test_lapsed_drop_in_promotion_is_voided(db_session, ctx, payments, make_class, grant):
    instance = await make_class(max_capacity=1)
    class_id = instance.id
    await grant(1)
    seat_holder = await reserve(db_session, ctx, class_id, member_id=1)
    waiting = await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")
    waiting_id = waiting.id
    now = utcnow()
    await cancel(db_session, ctx, seat_holder.id, Actor.member(1), now=now)

    await expire_due_promotions(db_session, ctx, now=now + timedelta(hours=3))

    assert (await get_reservation(db_session, waiting_id)).status is ReservationStatus.EXPIRED
    assert payments.voided == ["auth_1"]
    assert payments.captured == []


@pytest.mark.asyncio
async def test_refund_when_class_is_cancelled(db_session, ctx, payments, make_class):
    instance = await make_class()
    class_id = instance.id
    booked = await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")
    booked_id = booked.id

    await cancel_class_instance(db_session, ctx, class_id)

    reservation = await get_reservation(db_session, booked_id)
    assert reservation.cancellation_reason is CancellationReason.CLASS_CANCELLED
    assert payments.captured == ["auth_1"]
    assert payments.refunded == ["auth_1"]


@pytest.mark.asyncio
async def test_drop_in_is_idempotent(db_session, ctx, payments, make_class, counts):
    instance = await make_class()
    class_id = instance.id

    first = await book_drop_in(
        db_session, ctx, class_id, member_id=2, payment_method_id="pm_card", idempotency_key="drop-1"
    )
    again = await book_drop_in(
        db_session, ctx, class_id, member_id=2, payment_method_id="pm_card", idempotency_key="drop-1"
    )

    assert again.id == first.id
    assert len(payments.authorized) == 1
    assert await counts(class_id) == (1, 0, 0)


@pytest.mark.asyncio
async def test_studio_without_drop_in_falls_back_to_reserve(db_session, notifier, payments, make_class, grant):
    ctx = build_booking_context(notifier, payments, StaticPolicyStore(StudioPolicy()))
    instance = await make_class()
    class_id = instance.id

    with pytest.raises(EntitlementRequired):
        await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")

    await grant(2)
    reservation = await book_drop_in(db_session, ctx, class_id, member_id=2, payment_method_id="pm_card")

    assert reservation.entitlement_kind is EntitlementKind.SUBSCRIPTION
    assert payments.authorized == []


@pytest.mark.asyncio
async def test_authority_without_plan_falls_back_to_reserve(db_session, ctx, payments, make_class, grant):
    instance = await make_class()
    await grant(2)
    payments.no_drop_in_plan = True

    reservation = await book_drop_in(db_session, ctx, instance.id, member_id=2, payment_method_id="pm_card")

    assert reservation.status is ReservationStatus.BOOKED
    assert reservation.entitlement_kind is EntitlementKind.SUBSCRIPTION

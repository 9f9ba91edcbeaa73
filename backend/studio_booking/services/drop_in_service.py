"""
Drop-in booking saga: pay for a single class, then book it.

  step 1  authorize the studio's drop-in price with the payment authority
  step 2  reserve() with that authorization as the entitlement
  undo    void the authorization if step 2 fails

The authorization is captured only when the reservation is booked (right
away, or when a waitlist promotion is accepted) and voided if the member
never gets a seat. A studio without drop-in pricing raises the typed
NoDropInPlanConfigured, and the saga falls back to a standard reserve()
against the member's existing entitlements.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import NoDropInPlanConfigured
from studio_booking.core.logging import bind_class_context, get_logger
from studio_booking.core.metrics import record_payment_effect
from studio_booking.core.policy import StudioPolicy
from studio_booking.db.base import utcnow
from studio_booking.models.reservation import Reservation
from studio_booking.services.context import BookingContext
from studio_booking.services.idempotency_service import RESERVE, find_record
from studio_booking.services.interfaces.payment import PaymentAuthorization
from studio_booking.services.queries import load_class_instance
from studio_booking.services.reservation_service import ensure_bookable, ensure_no_live_reservation, reserve

logger = get_logger(__name__)


class DropInBookingSaga:
    def __init__(self, db: AsyncSession, ctx: BookingContext):
        self.db = db
        self.ctx = ctx

    async def run(
        self,
        class_instance_id: int,
        member_id: int,
        payment_method_id: str,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Reservation:
        now = now or utcnow()
        bind_class_context(class_instance_id, member_id=member_id)

        if idempotency_key and await find_record(self.db, RESERVE, idempotency_key):
            return await reserve(self.db, self.ctx, class_instance_id, member_id, idempotency_key, now=now)

        instance = await load_class_instance(self.db, class_instance_id)
        policy = await self.ctx.policies.for_studio(self.db, instance.studio_id)

        # Fail before charging anyone for a class they cannot book
        ensure_bookable(instance, now)
        await ensure_no_live_reservation(self.db, class_instance_id, member_id)

        try:
            authorization = await self._authorize(instance.studio_id, member_id, policy, payment_method_id, idempotency_key)
        except NoDropInPlanConfigured:
            logger.info("drop_in_unavailable_fallback_to_reserve", studio_id=instance.studio_id)
            return await reserve(self.db, self.ctx, class_instance_id, member_id, idempotency_key, now=now)

        try:
            reservation = await reserve(
                self.db,
                self.ctx,
                class_instance_id,
                member_id,
                idempotency_key,
                payment_authorization_id=authorization.id,
                now=now,
            )
        except Exception:
            await self._compensate(authorization, reason="reserve_failed")
            raise

        # A comp credit or pass took priority, or this was a replay
        if reservation.entitlement_ref != authorization.id:
            await self._compensate(authorization, reason="not_used")
        else:
            logger.info(
                "drop_in_booked",
                reservation_id=reservation.id,
                authorization_id=authorization.id,
                status=reservation.status.value,
            )
        return reservation

    async def _authorize(
        self,
        studio_id: int,
        member_id: int,
        policy: StudioPolicy,
        payment_method_id: str,
        idempotency_key: Optional[str],
    ) -> PaymentAuthorization:
        if policy.drop_in_price_cents is None:
            raise NoDropInPlanConfigured(f"Studio {studio_id} has no drop-in price")
        return await self.ctx.payments.authorize(
            member_id,
            studio_id,
            policy.drop_in_price_cents,
            policy.currency,
            payment_method_id,
            idempotency_key=idempotency_key,
        )

    async def _compensate(self, authorization: PaymentAuthorization, reason: str) -> None:
        try:
            await self.ctx.payments.void(authorization.id)
        except Exception as e:
            record_payment_effect("void", ok=False)
            logger.error("drop_in_void_failed", authorization_id=authorization.id, reason=reason, error=str(e))
            return
        record_payment_effect("void", ok=True)
        logger.info("drop_in_authorization_voided", authorization_id=authorization.id, reason=reason)


async def book_drop_in(
    db: AsyncSession,
    ctx: BookingContext,
    class_instance_id: int,
    member_id: int,
    payment_method_id: str,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    return await DropInBookingSaga(db, ctx).run(class_instance_id, member_id, payment_method_id, idempotency_key, now)

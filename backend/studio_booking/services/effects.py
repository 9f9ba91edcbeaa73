"""
Side effects that must only happen after the state change is committed.

A unit of work records what it wants to tell the notifier and the payment
authority; run() delivers it once the transaction is durable. Failures are
logged and counted, never raised: the seat state is already correct and
must not be rolled back because an email bounced or a capture timed out.
Promotion notifications that fail are picked up again by the sweep
(`promotion_notified_at` stays NULL).
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import record_notification, record_payment_effect
from studio_booking.db.base import utcnow
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import ReservationStatus
from studio_booking.services.interfaces.entitlement import EntitlementGrant
from studio_booking.services.interfaces.notifier import Notification, NotificationKind

logger = get_logger(__name__)


class PostCommitEffects:
    def __init__(self, ctx):
        self.ctx = ctx
        self._notifications: list[tuple[NotificationKind, Reservation, dict[str, Any]]] = []
        self._settlements: list[EntitlementGrant] = []
        self._releases: list[tuple[EntitlementGrant, bool]] = []
        self._fees: list[tuple[Reservation, int, int, str]] = []

    def notify(self, kind: NotificationKind, reservation: Reservation, **data: Any) -> None:
        self._notifications.append((kind, reservation, data))

    def promoted(self, reservation: Reservation) -> None:
        self.notify(NotificationKind.PROMOTED, reservation)

    def settle(self, grant: Optional[EntitlementGrant]) -> None:
        if grant is not None:
            self._settlements.append(grant)

    def release(self, grant: Optional[EntitlementGrant], consumed: bool) -> None:
        if grant is not None:
            self._releases.append((grant, consumed))

    def charge_late_fee(self, reservation: Reservation, studio_id: int, amount_cents: int, currency: str) -> None:
        if amount_cents > 0:
            self._fees.append((reservation, studio_id, amount_cents, currency))

    async def run(self, db: AsyncSession) -> None:
        for grant in self._settlements:
            await self._payment_call("capture", self.ctx.gate.settle(grant), source_id=grant.source_id)

        for grant, consumed in self._releases:
            action = "refund" if consumed else "void"
            await self._payment_call(action, self.ctx.gate.release(grant, consumed), source_id=grant.source_id)

        for reservation, studio_id, amount_cents, currency in self._fees:
            await self._payment_call(
                "fee",
                self.ctx.payments.charge_fee(
                    reservation.member_id,
                    studio_id,
                    amount_cents,
                    currency,
                    reference=f"late-cancel:{reservation.id}",
                ),
                reservation_id=reservation.id,
            )

        for kind, reservation, data in self._notifications:
            delivered = await deliver(self.ctx.notifier, kind, reservation, data)
            if delivered and kind is NotificationKind.PROMOTED:
                await mark_promotion_notified(db, reservation.id, utcnow())

    async def _payment_call(self, action: str, call, **log_fields) -> None:
        try:
            await call
            record_payment_effect(action, ok=True)
        except Exception as e:
            record_payment_effect(action, ok=False)
            logger.error("payment_effect_failed", action=action, error=str(e), **log_fields)


def build_notification(kind: NotificationKind, reservation: Reservation, data: Optional[dict] = None) -> Notification:
    payload = dict(data or {})
    if kind is NotificationKind.PROMOTED and reservation.promotion_deadline is not None:
        payload.setdefault("deadline", reservation.promotion_deadline.isoformat())
    if reservation.waitlist_position is not None:
        payload.setdefault("position", reservation.waitlist_position)
    return Notification(
        kind=kind,
        member_id=reservation.member_id,
        class_instance_id=reservation.class_instance_id,
        reservation_id=reservation.id,
        data=payload,
    )


async def deliver(notifier, kind: NotificationKind, reservation: Reservation, data: Optional[dict] = None) -> bool:
    try:
        await notifier.send(build_notification(kind, reservation, data))
    except Exception as e:
        record_notification(kind.value, delivered=False)
        logger.warning(
            "notification_failed",
            kind=kind.value,
            reservation_id=reservation.id,
            error=str(e),
        )
        return False
    record_notification(kind.value, delivered=True)
    return True


async def mark_promotion_notified(db: AsyncSession, reservation_id: int, at: datetime) -> None:
    await db.execute(
        update(Reservation)
        .where(
            Reservation.id == reservation_id,
            Reservation.status == ReservationStatus.PROMOTED,
            Reservation.promotion_notified_at.is_(None),
        )
        .values(promotion_notified_at=at)
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()


async def mark_confirmation_reminded(db: AsyncSession, reservation_id: int, at: datetime) -> None:
    await db.execute(
        update(Reservation)
        .where(
            Reservation.id == reservation_id,
            Reservation.confirmation_reminded_at.is_(None),
        )
        .values(confirmation_reminded_at=at)
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()

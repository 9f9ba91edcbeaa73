"""
Class instance registry.

Instances are produced by the upstream schedule generator and ingested
here; the engine only changes capacity (staff) and lifecycle status
(staff cancellation). Every instance gets its capacity ledger row on
ingest.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import InstanceNotBookable
from studio_booking.core.logging import bind_class_context, get_logger
from studio_booking.core.metrics import cancellations
from studio_booking.db.base import utcnow
from studio_booking.models.class_instance import ClassCapacity, ClassInstance
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import (
    CancellationReason,
    ClassStatus,
    ReservationEvent,
    ReservationStatus,
    apply_transition,
)
from studio_booking.services.capacity_service import commit_ledger, open_ledger, run_atomic
from studio_booking.services.context import BookingContext
from studio_booking.services.effects import PostCommitEffects
from studio_booking.services.entitlement_service import grant_of
from studio_booking.services.interfaces.notifier import NotificationKind
from studio_booking.services.promotion_service import promote_waitlist
from studio_booking.services.queries import load_class_instance

logger = get_logger(__name__)


@dataclass
class ClassCancellation:
    instance: ClassInstance
    cancelled_reservations: int


async def upsert_class_instance(
    db: AsyncSession,
    ctx: BookingContext,
    studio_id: int,
    starts_at: datetime,
    ends_at: datetime,
    max_capacity: int,
    title: Optional[str] = None,
    class_instance_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ClassInstance:
    """
    Create an instance (and its ledger), or update a re-sent one.

    A changed max_capacity on a re-send is applied like a staff capacity
    change, so an increase promotes from the waitlist.
    """
    existing = None
    if class_instance_id is not None:
        existing = await db.get(ClassInstance, class_instance_id)

    if existing is None:
        instance = ClassInstance(
            studio_id=studio_id,
            title=title,
            starts_at=starts_at,
            ends_at=ends_at,
            max_capacity=max_capacity,
            status=ClassStatus.SCHEDULED,
        )
        if class_instance_id is not None:
            instance.id = class_instance_id
        db.add(instance)
        await db.flush()
        db.add(ClassCapacity(class_instance_id=instance.id, booked_count=0, held_count=0, waitlist_count=0))
        await db.commit()
        logger.info("class_instance_created", class_instance_id=instance.id, max_capacity=max_capacity)
        return instance

    existing.title = title
    existing.starts_at = starts_at
    existing.ends_at = ends_at
    await db.commit()
    logger.info("class_instance_updated", class_instance_id=existing.id)

    if existing.max_capacity != max_capacity:
        return await change_capacity(db, ctx, existing.id, max_capacity, now)
    return existing


async def get_class_instance(db: AsyncSession, class_instance_id: int) -> tuple[ClassInstance, ClassCapacity]:
    instance = await load_class_instance(db, class_instance_id)
    result = await db.execute(
        select(ClassCapacity)
        .where(ClassCapacity.class_instance_id == class_instance_id)
        .execution_options(populate_existing=True)
    )
    return instance, result.scalar_one()


async def change_capacity(
    db: AsyncSession,
    ctx: BookingContext,
    class_instance_id: int,
    max_capacity: int,
    now: Optional[datetime] = None,
) -> ClassInstance:
    """
    Staff capacity change. Existing reservations are never revoked by a
    reduction; an increase offers the new seats to the waitlist.
    """
    now = now or utcnow()
    bind_class_context(class_instance_id)

    async def unit():
        effects = PostCommitEffects(ctx)
        ledger = await open_ledger(db, class_instance_id)
        if ledger.instance.status is not ClassStatus.SCHEDULED:
            raise InstanceNotBookable(f"Class instance {class_instance_id} is {ledger.instance.status.value}")
        previous = ledger.instance.max_capacity
        ledger.instance.max_capacity = max_capacity
        policy = await ctx.policies.for_studio(db, ledger.instance.studio_id)
        await promote_waitlist(db, ledger, policy, now, effects)
        await commit_ledger(db, ledger)
        return ledger.instance, previous, effects

    instance, previous, effects = await run_atomic(db, "change_capacity", unit)
    await effects.run(db)
    logger.info("class_capacity_changed", previous=previous, max_capacity=max_capacity)
    return instance


async def cancel_class_instance(
    db: AsyncSession,
    ctx: BookingContext,
    class_instance_id: int,
    now: Optional[datetime] = None,
) -> ClassCancellation:
    """
    Staff cancellation of a whole class. Every booked, confirmed, promoted
    and waitlisted reservation is cancelled with reason class_cancelled and
    its entitlement refunded. Nobody is promoted. Cancelling twice is a no-op.
    """
    now = now or utcnow()
    bind_class_context(class_instance_id)

    async def unit():
        effects = PostCommitEffects(ctx)
        ledger = await open_ledger(db, class_instance_id)
        instance = ledger.instance
        if instance.status is ClassStatus.CANCELLED:
            return ClassCancellation(instance, 0), effects

        result = await db.execute(
            select(Reservation)
            .where(
                Reservation.class_instance_id == class_instance_id,
                Reservation.status.in_([
                    ReservationStatus.BOOKED,
                    ReservationStatus.CONFIRMED,
                    ReservationStatus.PROMOTED,
                    ReservationStatus.WAITLISTED,
                ]),
            )
            .order_by(Reservation.id.asc())
            .execution_options(populate_existing=True)
        )
        affected = list(result.scalars().all())

        for reservation in affected:
            grant = grant_of(reservation)
            if reservation.entitlement_consumed and grant is not None:
                await ctx.gate.refund(db, grant)
                reservation.entitlement_consumed = False
                effects.release(grant, consumed=True)
            else:
                effects.release(grant, consumed=False)

            if reservation.status in (ReservationStatus.BOOKED, ReservationStatus.CONFIRMED):
                ledger.release_seat()
            apply_transition(reservation, ReservationEvent.CANCEL, now)
            reservation.cancellation_reason = CancellationReason.CLASS_CANCELLED
            effects.notify(NotificationKind.CLASS_CANCELLED, reservation)

        instance.status = ClassStatus.CANCELLED
        ledger.held = 0
        ledger.waitlist = 0
        await commit_ledger(db, ledger)
        return ClassCancellation(instance, len(affected)), effects

    outcome, effects = await run_atomic(db, "cancel_class", unit)
    await effects.run(db)

    if outcome.cancelled_reservations:
        cancellations.labels(reason=CancellationReason.CLASS_CANCELLED.value).inc(outcome.cancelled_reservations)
    logger.info("class_instance_cancelled", cancelled_reservations=outcome.cancelled_reservations)
    return outcome

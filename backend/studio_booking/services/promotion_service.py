"""
Cancellation & promotion engine.

Freed seats go to the head of the waitlist. The promoted member holds the
seat (held_count) until they accept or their deadline passes:

  waitlisted --promote--> promoted --accept--> booked
                                   --expire--> expired [--requeue--> waitlisted]

Deadlines are enforced by the background sweep, not by requests, so an
idle waitlist still resolves. After every expiry the engine promotes again,
cascading until the seat is taken or the waitlist is empty. Nobody is
promoted once the class has started.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import ClassFull, InstanceNotBookable, PromotionExpired
from studio_booking.core.logging import bind_class_context, get_logger
from studio_booking.core.metrics import record_promotion, record_sweep_failure
from studio_booking.core.policy import ExpiredPromotionPolicy, StudioPolicy
from studio_booking.db.base import utcnow
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import (
    ClassStatus,
    ReservationEvent,
    ReservationStatus,
    apply_transition,
    next_status,
)
from studio_booking.services.capacity_service import SeatLedger, commit_ledger, open_ledger, run_atomic
from studio_booking.services.effects import PostCommitEffects, deliver, mark_promotion_notified
from studio_booking.services.entitlement_service import attach_grant, grant_of, request_for
from studio_booking.services.interfaces.notifier import NotificationKind
from studio_booking.services.queries import load_reservation
from studio_booking.services.waitlist_service import append, compact, load_waitlist

logger = get_logger(__name__)


@dataclass
class ExpiryReport:
    expired: int = 0
    requeued: int = 0
    promoted: int = 0


async def promote_waitlist(
    db: AsyncSession,
    ledger: SeatLedger,
    policy: StudioPolicy,
    now: datetime,
    effects: PostCommitEffects,
) -> list[Reservation]:
    """Offer every free seat to the waitlist head. Runs inside the caller's unit."""
    instance = ledger.instance
    if instance.status is not ClassStatus.SCHEDULED or instance.starts_at <= now:
        return []
    if ledger.free_seats == 0:
        return []

    waitlist = await load_waitlist(db, instance.id)
    promoted = []
    while ledger.free_seats > 0 and waitlist:
        head = waitlist.pop(0)
        apply_transition(head, ReservationEvent.PROMOTE, now)
        head.promotion_deadline = min(now + policy.promotion_window, instance.starts_at)
        head.promotion_notified_at = None
        ledger.hold()
        effects.promoted(head)
        promoted.append(head)

    if promoted:
        compact(ledger, waitlist)
        record_promotion("promoted", len(promoted))
        logger.info(
            "waitlist_promoted",
            reservation_ids=[r.id for r in promoted],
            remaining_waitlist=ledger.waitlist,
        )
    return promoted


async def accept_promotion(
    db: AsyncSession,
    ctx,
    reservation_id: int,
    member_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    The promoted member takes the held seat.

    The entitlement quoted at waitlist time is consumed now; if it has since
    been used up the gate falls back to the member's next entitlement.

    Raises:
        PromotionExpired: the acceptance deadline has passed
        ClassFull: staff reduced capacity below the held seat
        EntitlementRequired: nothing left to pay for the seat
    """
    now = now or utcnow()

    async def unit():
        effects = PostCommitEffects(ctx)
        reservation = await load_reservation(db, reservation_id, member_id)
        next_status(reservation.status, ReservationEvent.ACCEPT)
        if reservation.promotion_deadline is not None and reservation.promotion_deadline <= now:
            raise PromotionExpired("The promotion deadline has passed")

        ledger = await open_ledger(db, reservation.class_instance_id)
        if ledger.instance.status is not ClassStatus.SCHEDULED:
            raise InstanceNotBookable("Class instance is not scheduled")
        # The held seat must still fit under max_capacity
        if ledger.booked >= ledger.instance.max_capacity:
            raise ClassFull("No seat left to accept this promotion")

        request = request_for(reservation, ledger.instance.studio_id, now)
        grant = await ctx.gate.consume(db, request, preferred=grant_of(reservation))
        attach_grant(reservation, grant, consumed=True)
        apply_transition(reservation, ReservationEvent.ACCEPT, now)
        ledger.convert_hold()
        await commit_ledger(db, ledger)

        effects.settle(grant)
        effects.notify(NotificationKind.BOOKED, reservation)
        return reservation, effects

    reservation, effects = await run_atomic(db, "accept_promotion", unit)
    await effects.run(db)

    record_promotion("accepted")
    logger.info("promotion_accepted", reservation_id=reservation.id, member_id=reservation.member_id)
    return reservation


async def expire_class_promotions(
    db: AsyncSession,
    ctx,
    class_instance_id: int,
    now: Optional[datetime] = None,
) -> ExpiryReport:
    """Expire lapsed promotions of one class, requeue or drop them, promote again."""
    now = now or utcnow()
    bind_class_context(class_instance_id)

    async def unit():
        effects = PostCommitEffects(ctx)
        report = ExpiryReport()
        ledger = await open_ledger(db, class_instance_id)
        policy = await ctx.policies.for_studio(db, ledger.instance.studio_id)

        result = await db.execute(
            select(Reservation)
            .where(
                Reservation.class_instance_id == class_instance_id,
                Reservation.status == ReservationStatus.PROMOTED,
                Reservation.promotion_deadline <= now,
            )
            .order_by(Reservation.promotion_deadline.asc(), Reservation.id.asc())
            .execution_options(populate_existing=True)
        )
        lapsed = list(result.scalars().all())

        for reservation in lapsed:
            apply_transition(reservation, ReservationEvent.EXPIRE, now)
            ledger.release_hold()
            report.expired += 1
            effects.notify(NotificationKind.PROMOTION_EXPIRED, reservation)

            requeue = (
                policy.expired_promotion_policy is ExpiredPromotionPolicy.REQUEUE
                and ledger.instance.starts_at > now
            )
            if requeue:
                apply_transition(reservation, ReservationEvent.REQUEUE, now)
                append(ledger, reservation)
                report.requeued += 1
            else:
                effects.release(grant_of(reservation), consumed=False)

        promoted = await promote_waitlist(db, ledger, policy, now, effects)
        report.promoted = len(promoted)
        await commit_ledger(db, ledger)
        return report, effects

    report, effects = await run_atomic(db, "expire_promotions", unit)
    await effects.run(db)

    record_promotion("expired", report.expired)
    record_promotion("requeued", report.requeued)
    if report.expired:
        logger.info(
            "promotions_expired",
            expired=report.expired,
            requeued=report.requeued,
            promoted=report.promoted,
        )
    return report


async def expire_due_promotions(db: AsyncSession, ctx, now: Optional[datetime] = None) -> ExpiryReport:
    """Expire lapsed promotions class by class. A class that fails is logged and left for the next sweep."""
    now = now or utcnow()
    result = await db.execute(
        select(Reservation.class_instance_id)
        .where(
            Reservation.status == ReservationStatus.PROMOTED,
            Reservation.promotion_deadline <= now,
        )
        .distinct()
    )
    class_ids = sorted(result.scalars().all())

    total = ExpiryReport()
    for class_instance_id in class_ids:
        try:
            report = await expire_class_promotions(db, ctx, class_instance_id, now)
        except Exception:
            await db.rollback()
            record_sweep_failure("expire_promotions")
            logger.exception("class_sweep_failed", step="expire_promotions", class_instance_id=class_instance_id)
            continue
        total.expired += report.expired
        total.requeued += report.requeued
        total.promoted += report.promoted
    return total


async def retry_promotion_notifications(db: AsyncSession, ctx, now: Optional[datetime] = None) -> int:
    """Re-send promotion notices whose first delivery failed. Returns how many went out."""
    now = now or utcnow()
    result = await db.execute(
        select(Reservation)
        .where(
            Reservation.status == ReservationStatus.PROMOTED,
            Reservation.promotion_notified_at.is_(None),
            Reservation.promotion_deadline > now,
        )
        .order_by(Reservation.id.asc())
    )
    pending = list(result.scalars().all())

    sent = 0
    for reservation in pending:
        if await deliver(ctx.notifier, NotificationKind.PROMOTED, reservation):
            await mark_promotion_notified(db, reservation.id, now)
            sent += 1
    if pending:
        logger.info("promotion_notifications_retried", pending=len(pending), sent=sent)
    return sent

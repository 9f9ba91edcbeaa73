"""
Booking ledger: reserve, confirm, cancel, no-show and roster reads.

Request flow for reserve():
  1. Idempotency key lookup (replay if this request already happened)
  2. Entitlement quote, outside any claim so it never holds up other members
  3. Capacity claim (versioned ledger write, see capacity_service.py):
       seat free  -> booked, entitlement consumed in the same transaction
       class full -> waitlisted at the tail, entitlement only reserved
  4. After commit: payment capture and notifications

A request that loses the race for the last seat is re-run against the new
counters and comes back waitlisted instead of failing.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import (
    CancellationWindowClosed,
    ClassFull,
    ConfirmationWindowNotOpen,
    DuplicateReservation,
    InstanceNotBookable,
    InvalidTransition,
)
from studio_booking.core.logging import bind_class_context, get_logger
from studio_booking.core.metrics import cancellations, confirmation_reminders, record_reservation, reservation_latency
from studio_booking.core.policy import StudioPolicy
from studio_booking.db.base import utcnow
from studio_booking.models.attendance import AttendanceRecord
from studio_booking.models.class_instance import ClassInstance
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import (
    CancellationReason,
    ClassStatus,
    ReservationEvent,
    ReservationStatus,
    SEATED_STATUSES,
    apply_transition,
)
from studio_booking.services import idempotency_service
from studio_booking.services.capacity_service import commit_ledger, open_ledger, run_atomic
from studio_booking.services.context import Actor, BookingContext
from studio_booking.services.effects import PostCommitEffects, deliver, mark_confirmation_reminded
from studio_booking.services.entitlement_service import attach_grant, grant_of
from studio_booking.services.interfaces.entitlement import EntitlementRequest
from studio_booking.services.interfaces.notifier import NotificationKind
from studio_booking.services.promotion_service import accept_promotion, promote_waitlist
from studio_booking.services.queries import find_live_reservation, load_class_instance, load_reservation
from studio_booking.services.waitlist_service import append, compact, load_waitlist

logger = get_logger(__name__)


@dataclass
class RosterEntry:
    reservation: Reservation
    attendance: Optional[AttendanceRecord] = None


def ensure_bookable(instance: ClassInstance, now: datetime) -> None:
    if instance.status is not ClassStatus.SCHEDULED:
        raise InstanceNotBookable(f"Class instance {instance.id} is {instance.status.value}")
    if instance.starts_at <= now:
        raise InstanceNotBookable(f"Class instance {instance.id} has already started")


async def ensure_no_live_reservation(db: AsyncSession, class_instance_id: int, member_id: int) -> None:
    existing = await find_live_reservation(db, class_instance_id, member_id)
    if existing is not None:
        raise DuplicateReservation(
            f"Member already holds reservation {existing.id} ({existing.status.value}) for this class"
        )


async def _replay(
    db: AsyncSession,
    operation: str,
    key: str,
    class_instance_id: Optional[int] = None,
    member_id: Optional[int] = None,
    reservation_id: Optional[int] = None,
) -> Optional[Reservation]:
    record = await idempotency_service.find_record(db, operation, key)
    if record is None:
        return None
    reservation = await load_reservation(db, record.reservation_id)
    if (
        (class_instance_id is not None and reservation.class_instance_id != class_instance_id)
        or (member_id is not None and reservation.member_id != member_id)
        or (reservation_id is not None and reservation.id != reservation_id)
    ):
        raise DuplicateReservation("Idempotency key was already used for a different request")
    logger.info("idempotent_replay", operation=operation, reservation_id=reservation.id)
    return reservation


async def reserve(
    db: AsyncSession,
    ctx: BookingContext,
    class_instance_id: int,
    member_id: int,
    idempotency_key: Optional[str] = None,
    payment_authorization_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Book a seat, or join the waitlist when the class is full.

    Raises:
        NotFound: unknown class instance
        InstanceNotBookable: cancelled, completed or already started
        DuplicateReservation: the member already holds a live reservation
        EntitlementRequired: no pass, credit, subscription or payment
        ClassFull: the class is full and the studio has no waitlist
        Conflict: claim retries exhausted
    """
    now = now or utcnow()
    bind_class_context(class_instance_id, member_id=member_id)

    if idempotency_key:
        replayed = await _replay(db, idempotency_service.RESERVE, idempotency_key, class_instance_id, member_id)
        if replayed is not None:
            record_reservation("replayed")
            return replayed

    with reservation_latency.time():
        instance = await load_class_instance(db, class_instance_id)
        ensure_bookable(instance, now)
        await ensure_no_live_reservation(db, class_instance_id, member_id)
        policy = await ctx.policies.for_studio(db, instance.studio_id)

        request = EntitlementRequest(
            member_id=member_id,
            studio_id=instance.studio_id,
            now=now,
            payment_authorization_id=payment_authorization_id,
        )
        quote = await ctx.gate.quote(db, request)

        async def unit():
            effects = PostCommitEffects(ctx)
            ledger = await open_ledger(db, class_instance_id)
            ensure_bookable(ledger.instance, now)
            await ensure_no_live_reservation(db, class_instance_id, member_id)

            reservation = Reservation(
                class_instance_id=class_instance_id,
                member_id=member_id,
                status=ReservationStatus.REQUESTED,
                walk_in=False,
                entitlement_consumed=False,
            )
            if ledger.free_seats > 0:
                grant = await ctx.gate.consume(db, request, preferred=quote)
                attach_grant(reservation, grant, consumed=True)
                apply_transition(reservation, ReservationEvent.BOOK, now)
                ledger.seat()
                effects.settle(grant)
                effects.notify(NotificationKind.BOOKED, reservation)
            elif policy.waitlist_enabled:
                attach_grant(reservation, quote, consumed=False)
                apply_transition(reservation, ReservationEvent.WAITLIST, now)
                append(ledger, reservation)
                effects.notify(NotificationKind.WAITLISTED, reservation)
            else:
                raise ClassFull(f"Class instance {class_instance_id} is full")

            db.add(reservation)
            await db.flush()
            if idempotency_key:
                await idempotency_service.remember(db, idempotency_service.RESERVE, idempotency_key, reservation.id)
            await commit_ledger(db, ledger)
            return reservation, effects

        try:
            reservation, effects = await run_atomic(db, "reserve", unit)
        except IntegrityError:
            # Lost a race on the live-reservation index or the idempotency key
            if idempotency_key:
                replayed = await _replay(
                    db, idempotency_service.RESERVE, idempotency_key, class_instance_id, member_id
                )
                if replayed is not None:
                    record_reservation("replayed")
                    return replayed
            record_reservation("rejected")
            raise DuplicateReservation("Member already holds a live reservation for this class")

    await effects.run(db)

    record_reservation(reservation.status.value)
    logger.info(
        "reservation_created",
        reservation_id=reservation.id,
        status=reservation.status.value,
        waitlist_position=reservation.waitlist_position,
        entitlement=reservation.entitlement_kind.value if reservation.entitlement_kind else None,
    )
    return reservation


def check_cancellation_window(instance: ClassInstance, policy: StudioPolicy, now: datetime) -> None:
    if now >= instance.starts_at - policy.cancellation_window:
        raise CancellationWindowClosed(
            f"Cancellations within {policy.cancellation_window} of class start are late"
        )


def cancellation_reason(actor: Actor, instance: ClassInstance, policy: StudioPolicy, now: datetime) -> CancellationReason:
    if not actor.is_member:
        return CancellationReason.STAFF_CANCEL
    try:
        check_cancellation_window(instance, policy, now)
    except CancellationWindowClosed:
        return CancellationReason.LATE_CANCEL
    return CancellationReason.MEMBER_INITIATED


async def confirm(
    db: AsyncSession,
    ctx: BookingContext,
    reservation_id: int,
    member_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Confirm intent to attend. On a promoted reservation this is the acceptance.

    Raises:
        ConfirmationWindowNotOpen: outside [start - confirmation_window, start)
        InvalidTransition: not booked (or promoted)
    """
    now = now or utcnow()
    current = await load_reservation(db, reservation_id, member_id)
    bind_class_context(current.class_instance_id, reservation_id=reservation_id)
    if current.status is ReservationStatus.PROMOTED:
        return await accept_promotion(db, ctx, reservation_id, member_id, now)

    async def unit():
        reservation = await load_reservation(db, reservation_id, member_id)
        instance = await load_class_instance(db, reservation.class_instance_id)
        policy = await ctx.policies.for_studio(db, instance.studio_id)
        if reservation.status is ReservationStatus.BOOKED:
            opens_at = instance.starts_at - policy.confirmation_window
            if not (opens_at <= now < instance.starts_at):
                raise ConfirmationWindowNotOpen(
                    f"Confirmation opens at {opens_at.isoformat()} and closes at class start"
                )
        apply_transition(reservation, ReservationEvent.CONFIRM, now)
        return reservation

    reservation = await run_atomic(db, "confirm", unit)
    logger.info("reservation_confirmed", reservation_id=reservation.id)
    return reservation


async def send_confirmation_reminders(db: AsyncSession, ctx: BookingContext, now: Optional[datetime] = None) -> int:
    """
    Remind booked members to confirm once their studio's confirmation window
    opens. Each reservation is reminded at most once; a failed delivery is
    tried again on the next sweep. Returns how many went out.
    """
    now = now or utcnow()
    due = (
        Reservation.status == ReservationStatus.BOOKED,
        Reservation.confirmation_reminded_at.is_(None),
        ClassInstance.status == ClassStatus.SCHEDULED,
        ClassInstance.starts_at > now,
    )
    studio_ids = (
        await db.execute(
            select(ClassInstance.studio_id)
            .join(Reservation, Reservation.class_instance_id == ClassInstance.id)
            .where(*due)
            .distinct()
        )
    ).scalars().all()

    # Resolved before any reservation is loaded: a failed lookup rolls the session back
    policies: dict[int, StudioPolicy] = {}
    for studio_id in sorted(studio_ids):
        try:
            policies[studio_id] = await ctx.policies.for_studio(db, studio_id)
        except Exception:
            await db.rollback()
            logger.exception("confirmation_reminders_skipped", studio_id=studio_id)

    result = await db.execute(
        select(Reservation, ClassInstance)
        .join(ClassInstance, ClassInstance.id == Reservation.class_instance_id)
        .where(*due)
        .order_by(ClassInstance.starts_at.asc(), Reservation.id.asc())
        .execution_options(populate_existing=True)
    )
    rows = result.all()

    sent = 0
    for reservation, instance in rows:
        policy = policies.get(instance.studio_id)
        if policy is None or now < instance.starts_at - policy.confirmation_window:
            continue
        data = {"starts_at": instance.starts_at.isoformat()}
        if await deliver(ctx.notifier, NotificationKind.CONFIRMATION_REMINDER, reservation, data):
            await mark_confirmation_reminded(db, reservation.id, now)
            sent += 1

    if sent:
        confirmation_reminders.inc(sent)
        logger.info("confirmation_reminders_sent", sent=sent)
    return sent


async def cancel(
    db: AsyncSession,
    ctx: BookingContext,
    reservation_id: int,
    actor: Actor,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Cancel a booked, confirmed, promoted or waitlisted reservation.

    - waitlisted: removed and the queue compacted, nobody promoted
    - promoted: the member declines, the held seat goes to the next in line
    - booked/confirmed: the seat is freed and offered to the waitlist;
      a member cancelling inside the cutoff is a late cancel (no refund,
      optional fee), otherwise the entitlement is refunded
    """
    now = now or utcnow()
    member_id = actor.id if actor.is_member else None

    if idempotency_key:
        replayed = await _replay(db, idempotency_service.CANCEL, idempotency_key, reservation_id=reservation_id)
        if replayed is not None:
            return replayed

    async def unit():
        effects = PostCommitEffects(ctx)
        reservation = await load_reservation(db, reservation_id, member_id)
        bind_class_context(reservation.class_instance_id, reservation_id=reservation_id)
        ledger = await open_ledger(db, reservation.class_instance_id)
        policy = await ctx.policies.for_studio(db, ledger.instance.studio_id)
        prior = reservation.status
        grant = grant_of(reservation)

        if prior is ReservationStatus.WAITLISTED:
            reason = CancellationReason.MEMBER_INITIATED if actor.is_member else CancellationReason.STAFF_CANCEL
            apply_transition(reservation, ReservationEvent.CANCEL, now)
            compact(ledger, await load_waitlist(db, ledger.class_instance_id))
            effects.release(grant, consumed=False)

        elif prior is ReservationStatus.PROMOTED:
            reason = CancellationReason.MEMBER_INITIATED if actor.is_member else CancellationReason.STAFF_CANCEL
            apply_transition(reservation, ReservationEvent.CANCEL, now)
            ledger.release_hold()
            effects.release(grant, consumed=False)
            await promote_waitlist(db, ledger, policy, now, effects)

        else:
            reason = cancellation_reason(actor, ledger.instance, policy, now)
            apply_transition(reservation, ReservationEvent.CANCEL, now)
            ledger.release_seat()
            if reason is CancellationReason.LATE_CANCEL:
                effects.charge_late_fee(
                    reservation, ledger.instance.studio_id, policy.late_cancel_fee_cents, policy.currency
                )
            elif reservation.entitlement_consumed and grant is not None:
                await ctx.gate.refund(db, grant)
                reservation.entitlement_consumed = False
                effects.release(grant, consumed=True)
            await promote_waitlist(db, ledger, policy, now, effects)

        reservation.cancellation_reason = reason
        effects.notify(NotificationKind.CANCELLED, reservation, reason=reason.value)
        if idempotency_key:
            await idempotency_service.remember(db, idempotency_service.CANCEL, idempotency_key, reservation.id)
        await commit_ledger(db, ledger)
        return reservation, effects

    try:
        reservation, effects = await run_atomic(db, "cancel", unit)
    except IntegrityError:
        if idempotency_key:
            replayed = await _replay(db, idempotency_service.CANCEL, idempotency_key, reservation_id=reservation_id)
            if replayed is not None:
                return replayed
        raise

    await effects.run(db)

    cancellations.labels(reason=reservation.cancellation_reason.value).inc()
    logger.info(
        "reservation_cancelled",
        reservation_id=reservation.id,
        reason=reservation.cancellation_reason.value,
        actor=actor.role.value,
    )
    return reservation


async def mark_no_show(
    db: AsyncSession,
    ctx: BookingContext,
    reservation_id: int,
    now: Optional[datetime] = None,
) -> Reservation:
    """System only: a booked/confirmed reservation whose class has ended."""
    now = now or utcnow()

    async def unit():
        effects = PostCommitEffects(ctx)
        reservation = await load_reservation(db, reservation_id)
        ledger = await open_ledger(db, reservation.class_instance_id)
        if ledger.instance.ends_at > now:
            raise InvalidTransition("No-shows are only recorded after the class has ended")
        apply_transition(reservation, ReservationEvent.MARK_NO_SHOW, now)
        ledger.release_seat()
        await commit_ledger(db, ledger)
        effects.notify(NotificationKind.NO_SHOW, reservation)
        return reservation, effects

    reservation, effects = await run_atomic(db, "mark_no_show", unit)
    await effects.run(db)
    logger.info("reservation_no_show", reservation_id=reservation.id)
    return reservation


async def get_reservation(db: AsyncSession, reservation_id: int) -> Reservation:
    return await load_reservation(db, reservation_id)


async def list_member_reservations(
    db: AsyncSession,
    member_id: int,
    upcoming_only: bool = True,
    now: Optional[datetime] = None,
) -> list[Reservation]:
    """
    A member's reservations. By default only live ones (booked, confirmed,
    promoted, waitlisted) for scheduled classes that have not started,
    soonest class first; otherwise the full history, newest first.
    """
    now = now or utcnow()
    query = select(Reservation).join(ClassInstance, ClassInstance.id == Reservation.class_instance_id)
    if upcoming_only:
        query = query.where(
            Reservation.member_id == member_id,
            Reservation.status.in_([
                ReservationStatus.BOOKED,
                ReservationStatus.CONFIRMED,
                ReservationStatus.PROMOTED,
                ReservationStatus.WAITLISTED,
            ]),
            ClassInstance.status == ClassStatus.SCHEDULED,
            ClassInstance.starts_at > now,
        ).order_by(ClassInstance.starts_at.asc(), Reservation.id.asc())
    else:
        query = query.where(Reservation.member_id == member_id).order_by(
            ClassInstance.starts_at.desc(), Reservation.id.desc()
        )

    result = await db.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def list_roster(db: AsyncSession, class_instance_id: int) -> list[RosterEntry]:
    """Seated members first (by booking time), then promoted, then the waitlist by position."""
    await load_class_instance(db, class_instance_id)

    result = await db.execute(
        select(Reservation, AttendanceRecord)
        .outerjoin(AttendanceRecord, AttendanceRecord.reservation_id == Reservation.id)
        .where(
            Reservation.class_instance_id == class_instance_id,
            Reservation.status.in_(
                SEATED_STATUSES | {ReservationStatus.PROMOTED, ReservationStatus.WAITLISTED}
            ),
        )
        .execution_options(populate_existing=True)
    )
    entries = [RosterEntry(reservation=r, attendance=a) for r, a in result.all()]

    def sort_key(entry: RosterEntry):
        r = entry.reservation
        if r.status in SEATED_STATUSES:
            return (0, r.created_at, r.id)
        if r.status is ReservationStatus.PROMOTED:
            return (1, r.promoted_at or r.created_at, r.id)
        return (2, r.waitlist_position, r.id)

    return sorted(entries, key=sort_key)

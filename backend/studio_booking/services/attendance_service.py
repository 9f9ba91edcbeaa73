"""
Check-in / attendance tracker and the class completion sweep.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import (
    BookingError,
    CapacityExhausted,
    CheckInNotOpen,
    ClassNotInProgress,
    DuplicateReservation,
    EntitlementRequired,
    InstanceNotBookable,
    NotFound,
    WalkInNotAllowed,
)
from studio_booking.core.logging import bind_class_context, get_logger
from studio_booking.core.metrics import check_ins, no_shows, record_sweep_failure
from studio_booking.db.base import utcnow
from studio_booking.models.attendance import AttendanceRecord
from studio_booking.models.class_instance import ClassCapacity, ClassInstance
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import ClassStatus, ReservationEvent, ReservationStatus, apply_transition
from studio_booking.services import idempotency_service
from studio_booking.services.capacity_service import commit_ledger, open_ledger, run_atomic
from studio_booking.services.context import BookingContext
from studio_booking.services.effects import PostCommitEffects
from studio_booking.services.entitlement_service import attach_grant, grant_of
from studio_booking.services.interfaces.entitlement import EntitlementRequest
from studio_booking.services.interfaces.notifier import NotificationKind
from studio_booking.services.queries import (
    find_live_reservation,
    load_attendance,
    load_class_instance,
    load_reservation,
)

logger = get_logger(__name__)


@dataclass
class CheckInResult:
    reservation_id: int
    ok: bool
    attendance: Optional[AttendanceRecord] = None
    error: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class CompletionReport:
    class_instance_id: int
    status: Optional[ClassStatus] = None
    no_shows: int = 0
    expired: int = 0
    attended: int = 0
    closed_out: bool = False


def ensure_check_in_open(instance: ClassInstance, now: datetime) -> None:
    if instance.status is ClassStatus.CANCELLED:
        raise InstanceNotBookable(f"Class instance {instance.id} was cancelled")
    if instance.status is ClassStatus.COMPLETED:
        raise InstanceNotBookable(f"Class instance {instance.id} has already been completed")
    if now < instance.starts_at:
        raise CheckInNotOpen(f"Check-in opens at {instance.starts_at.isoformat()}")


async def check_in(
    db: AsyncSession,
    ctx: BookingContext,
    reservation_id: int,
    checked_in_by: str,
    idempotency_key: Optional[str] = None,
    class_instance_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AttendanceRecord:
    """
    Check a booked or confirmed member in. Checking in twice returns the
    first attendance record.
    """
    now = now or utcnow()

    if idempotency_key:
        record = await idempotency_service.find_record(db, idempotency_service.CHECK_IN, idempotency_key)
        if record is not None:
            if record.reservation_id != reservation_id:
                raise DuplicateReservation("Idempotency key was already used for a different request")
            if record.attendance_id is not None:
                return await db.get(AttendanceRecord, record.attendance_id)

    async def unit():
        reservation = await load_reservation(db, reservation_id)
        if class_instance_id is not None and reservation.class_instance_id != class_instance_id:
            raise NotFound(f"Reservation {reservation_id} is not on class instance {class_instance_id}")
        bind_class_context(reservation.class_instance_id, reservation_id=reservation_id)

        if reservation.status is ReservationStatus.CHECKED_IN:
            existing = await load_attendance(db, reservation.id)
            if existing is not None:
                return existing, False

        instance = await load_class_instance(db, reservation.class_instance_id)
        ensure_check_in_open(instance, now)
        apply_transition(reservation, ReservationEvent.CHECK_IN, now)

        attendance = AttendanceRecord(
            reservation_id=reservation.id,
            class_instance_id=reservation.class_instance_id,
            member_id=reservation.member_id,
            checked_in=True,
            checked_in_at=now,
            checked_in_by=checked_in_by,
            walk_in=False,
        )
        db.add(attendance)
        await db.flush()
        if idempotency_key:
            await idempotency_service.remember(
                db, idempotency_service.CHECK_IN, idempotency_key, reservation.id, attendance.id
            )
        return attendance, True

    try:
        attendance, created = await run_atomic(db, "check_in", unit)
    except IntegrityError:
        # A concurrent copy of this check-in won
        existing = await load_attendance(db, reservation_id)
        if existing is None:
            raise
        return existing

    if created:
        check_ins.labels(kind="reserved").inc()
        logger.info("checked_in", reservation_id=reservation_id, by=checked_in_by)
    return attendance


async def batch_check_in(
    db: AsyncSession,
    ctx: BookingContext,
    class_instance_id: int,
    reservation_ids: list[int],
    staff_id: str,
    now: Optional[datetime] = None,
) -> list[CheckInResult]:
    """Check in each reservation on its own; one failure does not affect the rest."""
    now = now or utcnow()
    await load_class_instance(db, class_instance_id)

    results = []
    for reservation_id in reservation_ids:
        try:
            attendance = await check_in(
                db, ctx, reservation_id, staff_id, class_instance_id=class_instance_id, now=now
            )
        except BookingError as e:
            results.append(CheckInResult(reservation_id=reservation_id, ok=False, error=e.code, detail=e.message))
            continue
        results.append(CheckInResult(reservation_id=reservation_id, ok=True, attendance=attendance))

    # A failed item rolls the session back, which expires records loaded before it
    for result in results:
        if result.ok:
            result.attendance = await load_attendance(db, result.reservation_id)

    failed = sum(1 for r in results if not r.ok)
    logger.info("batch_check_in", class_instance_id=class_instance_id, total=len(results), failed=failed)
    return results


async def walk_in(
    db: AsyncSession,
    ctx: BookingContext,
    class_instance_id: int,
    member_id: int,
    staff_id: str,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Seat and check in a member who has no reservation.

    Walk-ins never join the waitlist: a class already full from bookings
    (including seats held for promoted members) rejects them.

    Raises:
        WalkInNotAllowed: the studio does not take walk-ins
        CapacityExhausted: no free seat
        EntitlementRequired: no entitlement and the studio requires one
        DuplicateReservation: the member already has a live reservation
    """
    now = now or utcnow()
    bind_class_context(class_instance_id, member_id=member_id)

    instance = await load_class_instance(db, class_instance_id)
    policy = await ctx.policies.for_studio(db, instance.studio_id)
    if not policy.walk_ins_enabled:
        raise WalkInNotAllowed("This studio does not accept walk-ins")
    ensure_check_in_open(instance, now)

    request = EntitlementRequest(member_id=member_id, studio_id=instance.studio_id, now=now)
    try:
        quote = await ctx.gate.quote(db, request)
    except EntitlementRequired:
        if policy.walk_in_requires_entitlement:
            raise
        quote = None

    async def unit():
        effects = PostCommitEffects(ctx)
        ledger = await open_ledger(db, class_instance_id)
        ensure_check_in_open(ledger.instance, now)
        if ledger.swept_at is not None:
            raise InstanceNotBookable(f"Class instance {class_instance_id} has already been closed out")
        existing = await find_live_reservation(db, class_instance_id, member_id)
        if existing is not None:
            raise DuplicateReservation(
                f"Member already holds reservation {existing.id}; check that one in instead"
            )
        if ledger.free_seats == 0:
            raise CapacityExhausted(f"Class instance {class_instance_id} is at capacity")

        reservation = Reservation(
            class_instance_id=class_instance_id,
            member_id=member_id,
            status=ReservationStatus.REQUESTED,
            walk_in=True,
            entitlement_consumed=False,
        )
        if quote is not None:
            grant = await ctx.gate.consume(db, request, preferred=quote)
            attach_grant(reservation, grant, consumed=True)
            effects.settle(grant)
        apply_transition(reservation, ReservationEvent.BOOK, now)
        apply_transition(reservation, ReservationEvent.CHECK_IN, now)
        ledger.seat()
        db.add(reservation)
        await db.flush()

        db.add(AttendanceRecord(
            reservation_id=reservation.id,
            class_instance_id=class_instance_id,
            member_id=member_id,
            checked_in=True,
            checked_in_at=now,
            checked_in_by=staff_id,
            walk_in=True,
        ))
        await commit_ledger(db, ledger)
        return reservation, effects

    try:
        reservation, effects = await run_atomic(db, "walk_in", unit)
    except IntegrityError:
        raise DuplicateReservation("Member already holds a live reservation for this class")

    await effects.run(db)
    check_ins.labels(kind="walk_in").inc()
    logger.info("walk_in_checked_in", reservation_id=reservation.id, by=staff_id)
    return reservation


async def complete_class(
    db: AsyncSession,
    ctx: BookingContext,
    class_instance_id: int,
    now: Optional[datetime] = None,
    by_staff: bool = False,
) -> CompletionReport:
    """
    Close out a class: booked/confirmed become no_show, anyone still
    waiting or promoted expires, and the instance is marked completed.
    Checked-in members get a post-class notice. Runs once per class.

    The sweep calls this once the end time has passed. Staff may complete a
    class by hand as soon as it has started.

    Raises:
        ClassNotInProgress: staff completion of a cancelled or not yet started class
    """
    now = now or utcnow()
    bind_class_context(class_instance_id)

    async def unit():
        effects = PostCommitEffects(ctx)
        ledger = await open_ledger(db, class_instance_id)
        instance = ledger.instance
        report = CompletionReport(class_instance_id=class_instance_id, status=instance.status)
        if ledger.swept_at is not None:
            return report, effects
        if by_staff:
            if instance.status is ClassStatus.CANCELLED:
                raise ClassNotInProgress(f"Class instance {class_instance_id} was cancelled")
            if instance.starts_at > now:
                raise ClassNotInProgress(f"Class instance {class_instance_id} has not started yet")
        elif instance.ends_at > now:
            return report, effects

        # A cancelled class stays cancelled; it is only reconciled
        completing = instance.status is ClassStatus.SCHEDULED

        result = await db.execute(
            select(Reservation)
            .where(
                Reservation.class_instance_id == class_instance_id,
                Reservation.status.in_([
                    ReservationStatus.BOOKED,
                    ReservationStatus.CONFIRMED,
                    ReservationStatus.CHECKED_IN,
                    ReservationStatus.PROMOTED,
                    ReservationStatus.WAITLISTED,
                ]),
            )
            .order_by(Reservation.id.asc())
            .execution_options(populate_existing=True)
        )
        for reservation in result.scalars().all():
            if reservation.status is ReservationStatus.CHECKED_IN:
                if completing:
                    effects.notify(NotificationKind.CLASS_COMPLETED, reservation)
                report.attended += 1
            elif reservation.status is ReservationStatus.PROMOTED:
                apply_transition(reservation, ReservationEvent.EXPIRE, now)
                ledger.release_hold()
                effects.release(grant_of(reservation), consumed=False)
                report.expired += 1
            elif reservation.status is ReservationStatus.WAITLISTED:
                apply_transition(reservation, ReservationEvent.EXPIRE, now)
                effects.release(grant_of(reservation), consumed=False)
                report.expired += 1
            else:
                apply_transition(reservation, ReservationEvent.MARK_NO_SHOW, now)
                ledger.release_seat()
                effects.notify(NotificationKind.NO_SHOW, reservation)
                report.no_shows += 1

        if completing:
            instance.status = ClassStatus.COMPLETED
        report.status = instance.status
        report.closed_out = True
        ledger.waitlist = 0
        ledger.swept_at = now
        await commit_ledger(db, ledger)
        return report, effects

    report, effects = await run_atomic(db, "complete_class", unit)
    await effects.run(db)

    if report.no_shows:
        no_shows.inc(report.no_shows)
    if report.closed_out:
        logger.info(
            "class_completed",
            no_shows=report.no_shows,
            expired=report.expired,
            attended=report.attended,
            by_staff=by_staff,
        )
    return report


async def sweep_completed_classes(
    db: AsyncSession,
    ctx: BookingContext,
    now: Optional[datetime] = None,
) -> list[CompletionReport]:
    """Close out every ended class. A class that fails is logged and left for the next sweep."""
    now = now or utcnow()
    result = await db.execute(
        select(ClassCapacity.class_instance_id)
        .join(ClassInstance, ClassInstance.id == ClassCapacity.class_instance_id)
        .where(ClassInstance.ends_at <= now, ClassCapacity.swept_at.is_(None))
        .order_by(ClassInstance.ends_at.asc())
    )
    class_ids = list(result.scalars().all())

    reports = []
    for class_instance_id in class_ids:
        try:
            reports.append(await complete_class(db, ctx, class_instance_id, now))
        except Exception:
            await db.rollback()
            record_sweep_failure("complete_class")
            logger.exception("class_sweep_failed", step="complete_class", class_instance_id=class_instance_id)
    return reports

"""
Waitlist queue.

Positions are 0-based and dense per class instance, in arrival order. The
queue length lives on the capacity ledger (`waitlist_count`), so appending
and compacting are covered by the same versioned write as the seat counters.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.metrics import waitlist_length
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import ReservationStatus
from studio_booking.services.capacity_service import SeatLedger


async def load_waitlist(db: AsyncSession, class_instance_id: int) -> list[Reservation]:
    result = await db.execute(
        select(Reservation)
        .where(
            Reservation.class_instance_id == class_instance_id,
            Reservation.status == ReservationStatus.WAITLISTED,
        )
        .order_by(Reservation.waitlist_position.asc(), Reservation.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def compact(ledger: SeatLedger, entries: list[Reservation]) -> None:
    """Renumber the remaining entries 0..n-1 without changing their order."""
    for position, entry in enumerate(entries):
        if entry.waitlist_position != position:
            entry.waitlist_position = position
    ledger.waitlist = len(entries)
    waitlist_length.set(ledger.waitlist)


def append(ledger: SeatLedger, reservation: Reservation) -> int:
    """Put `reservation` at the tail. Its status must already be waitlisted."""
    reservation.waitlist_position = ledger.waitlist
    ledger.waitlist += 1
    waitlist_length.set(ledger.waitlist)
    return reservation.waitlist_position

"""
Capacity accountant: per-class seat counters guarded by optimistic locking.

CONCURRENCY STRATEGY: Versioned ledger row + re-run the whole unit
==================================================================

Every read-modify-write of a class's capacity or waitlist goes through the
`class_capacity` row:

  1. open_ledger() reads the instance and its counters (fresh, not from the
     identity map) and remembers the version it saw
  2. the unit of work decides what to do with that snapshot: seat a member,
     waitlist them, hold a seat for a promotion, give a seat back...
  3. commit_ledger() writes the new counters with
     UPDATE class_capacity SET ..., version = version + 1
     WHERE class_instance_id = :id AND version = :read_version
  4. rows_affected == 0 means another request changed the class first

On a conflict run_atomic() rolls back and runs the unit again from step 1,
so the decision is re-made against the new counters. A reserve that lost
the race for the last seat therefore comes back as a waitlist entry rather
than an error. Conflicts on an individual reservation row (ORM version_id_col)
are handled the same way.

Free seats = max_capacity - booked - held. Seats held for promoted waitlist
entries are never offered to new requests.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from studio_booking.core.config import get_settings
from studio_booking.core.exceptions import Conflict, NotFound
from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import record_claim_conflict, record_claim_retry
from studio_booking.models.class_instance import ClassCapacity, ClassInstance

logger = get_logger(__name__)

T = TypeVar("T")


class CapacityConflict(Exception):
    """The ledger row changed between read and write."""


@dataclass
class SeatLedger:
    instance: ClassInstance
    booked: int
    held: int
    waitlist: int
    version: int
    swept_at: Optional[datetime] = None

    @property
    def class_instance_id(self) -> int:
        return self.instance.id

    @property
    def free_seats(self) -> int:
        return max(self.instance.max_capacity - self.booked - self.held, 0)

    def seat(self) -> None:
        self.booked += 1

    def release_seat(self) -> None:
        if self.booked <= 0:
            raise CapacityConflict("booked_count would go negative")
        self.booked -= 1

    def hold(self) -> None:
        self.held += 1

    def release_hold(self) -> None:
        if self.held <= 0:
            raise CapacityConflict("held_count would go negative")
        self.held -= 1

    def convert_hold(self) -> None:
        """A promoted member accepted: the held seat becomes a booked one."""
        self.release_hold()
        self.seat()


async def open_ledger(db: AsyncSession, class_instance_id: int) -> SeatLedger:
    result = await db.execute(
        select(ClassInstance)
        .where(ClassInstance.id == class_instance_id)
        .execution_options(populate_existing=True)
    )
    instance = result.scalar_one_or_none()
    if instance is None:
        raise NotFound(f"Class instance {class_instance_id} not found")

    result = await db.execute(
        select(ClassCapacity)
        .where(ClassCapacity.class_instance_id == class_instance_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFound(f"Class instance {class_instance_id} has no capacity ledger")

    return SeatLedger(
        instance=instance,
        booked=row.booked_count,
        held=row.held_count,
        waitlist=row.waitlist_count,
        version=row.version,
        swept_at=row.swept_at,
    )


async def commit_ledger(db: AsyncSession, ledger: SeatLedger) -> None:
    """Write the ledger back, failing if anyone else wrote it since open_ledger()."""
    result = await db.execute(
        update(ClassCapacity)
        .where(
            ClassCapacity.class_instance_id == ledger.class_instance_id,
            ClassCapacity.version == ledger.version,
        )
        .values(
            booked_count=ledger.booked,
            held_count=ledger.held,
            waitlist_count=ledger.waitlist,
            swept_at=ledger.swept_at,
            version=ClassCapacity.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise CapacityConflict(f"class_capacity {ledger.class_instance_id} changed since version {ledger.version}")
    ledger.version += 1


async def run_atomic(
    db: AsyncSession,
    operation: str,
    unit: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
) -> T:
    """
    Run `unit` and commit it, re-running from scratch on version conflicts.

    `unit` must re-read everything it decides on, since a retry starts after a
    rollback. Any other exception rolls back and propagates.

    Raises:
        Conflict: still conflicting after `max_attempts` tries
    """
    attempts = max_attempts or get_settings().MAX_CLAIM_RETRIES

    for attempt in range(1, attempts + 1):
        try:
            result = await unit()
            await db.commit()
            return result
        except (CapacityConflict, StaleDataError) as e:
            await db.rollback()
            record_claim_retry(operation)
            logger.info(
                "claim_retry",
                operation=operation,
                attempt=attempt,
                reason=type(e).__name__,
            )
        except Exception:
            await db.rollback()
            raise

    record_claim_conflict(operation)
    logger.warning("claim_conflict", operation=operation, attempts=attempts)
    raise Conflict("The class is changing too quickly. Please try again.")

"""
Idempotency keys for reserve, cancel and check-in.

The key is written in the same transaction as the state change. A retried
request either finds the record up front and replays the stored result, or
(when both copies race) loses on the unique constraint, rolls back and
then finds it.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.models.idempotency import IdempotencyRecord

RESERVE = "reserve"
CANCEL = "cancel"
CHECK_IN = "check_in"


async def find_record(db: AsyncSession, operation: str, key: str) -> Optional[IdempotencyRecord]:
    result = await db.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.operation == operation,
            IdempotencyRecord.key == key,
        )
    )
    return result.scalar_one_or_none()


async def remember(
    db: AsyncSession,
    operation: str,
    key: str,
    reservation_id: int,
    attendance_id: Optional[int] = None,
) -> None:
    db.add(IdempotencyRecord(
        operation=operation,
        key=key,
        reservation_id=reservation_id,
        attendance_id=attendance_id,
    ))
    await db.flush()

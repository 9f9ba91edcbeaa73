"""
Shared read helpers. Reads inside a unit of work always bypass the identity
map so a retried unit never decides on what the previous attempt saw.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import NotFound
from studio_booking.models.attendance import AttendanceRecord
from studio_booking.models.class_instance import ClassInstance
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import LIVE_STATUSES


async def load_class_instance(db: AsyncSession, class_instance_id: int) -> ClassInstance:
    result = await db.execute(
        select(ClassInstance)
        .where(ClassInstance.id == class_instance_id)
        .execution_options(populate_existing=True)
    )
    instance = result.scalar_one_or_none()
    if instance is None:
        raise NotFound(f"Class instance {class_instance_id} not found")
    return instance


async def load_reservation(db: AsyncSession, reservation_id: int, member_id: Optional[int] = None) -> Reservation:
    """Fetch a reservation; when `member_id` is given it must be theirs."""
    result = await db.execute(
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .execution_options(populate_existing=True)
    )
    reservation = result.scalar_one_or_none()
    # Someone else's reservation looks the same as a missing one
    if reservation is None or (member_id is not None and reservation.member_id != member_id):
        raise NotFound(f"Reservation {reservation_id} not found")
    return reservation


async def find_live_reservation(db: AsyncSession, class_instance_id: int, member_id: int) -> Optional[Reservation]:
    result = await db.execute(
        select(Reservation)
        .where(
            Reservation.class_instance_id == class_instance_id,
            Reservation.member_id == member_id,
            Reservation.status.in_(LIVE_STATUSES),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def load_attendance(db: AsyncSession, reservation_id: int) -> Optional[AttendanceRecord]:
    result = await db.execute(
        select(AttendanceRecord)
        .where(AttendanceRecord.reservation_id == reservation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()

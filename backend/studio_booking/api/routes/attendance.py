"""
Check-in endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.api.deps import get_booking_context, get_idempotency_key
from studio_booking.db.session import get_db
from studio_booking.schemas.attendance import (
    AttendanceResponse,
    BatchCheckInRequest,
    CheckInItemResult,
    CheckInRequest,
    WalkInRequest,
)
from studio_booking.schemas.reservation import ReservationResponse
from studio_booking.services import attendance_service
from studio_booking.services.context import BookingContext

router = APIRouter(tags=["Attendance"])


@router.post("/reservations/{reservation_id}/check-in", response_model=AttendanceResponse)
async def check_in(
    reservation_id: int,
    data: CheckInRequest,
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    return await attendance_service.check_in(db, ctx, reservation_id, data.checked_in_by, idempotency_key)


@router.post("/classes/{class_instance_id}/check-ins", response_model=list[CheckInItemResult])
async def batch_check_in(
    class_instance_id: int,
    data: BatchCheckInRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    """Check in several reservations. Each item succeeds or fails on its own."""
    results = await attendance_service.batch_check_in(
        db, ctx, class_instance_id, data.reservation_ids, data.staff_id
    )
    return [CheckInItemResult.model_validate(result) for result in results]


@router.post(
    "/classes/{class_instance_id}/walk-ins",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def walk_in(
    class_instance_id: int,
    data: WalkInRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    return await attendance_service.walk_in(db, ctx, class_instance_id, data.member_id, data.staff_id)

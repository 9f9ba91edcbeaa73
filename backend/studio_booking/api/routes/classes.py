"""
Class instance endpoints: ingest from the scheduler, capacity, cancellation,
completion, roster.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.api.deps import get_booking_context
from studio_booking.db.session import get_db
from studio_booking.schemas.attendance import RosterEntryResponse
from studio_booking.schemas.class_instance import (
    CapacityUpdate,
    ClassCancelResponse,
    ClassCompletionResponse,
    ClassInstanceResponse,
    ClassInstanceUpsert,
)
from studio_booking.services import registry_service
from studio_booking.services.attendance_service import complete_class
from studio_booking.services.context import BookingContext
from studio_booking.services.reservation_service import list_roster

router = APIRouter(prefix="/classes", tags=["Classes"])


async def _class_response(db: AsyncSession, class_instance_id: int) -> ClassInstanceResponse:
    instance, capacity = await registry_service.get_class_instance(db, class_instance_id)
    return ClassInstanceResponse(
        id=instance.id,
        studio_id=instance.studio_id,
        title=instance.title,
        starts_at=instance.starts_at,
        ends_at=instance.ends_at,
        max_capacity=instance.max_capacity,
        status=instance.status,
        booked_count=capacity.booked_count,
        held_count=capacity.held_count,
        waitlist_count=capacity.waitlist_count,
        available_seats=max(instance.max_capacity - capacity.booked_count - capacity.held_count, 0),
    )


@router.post("", response_model=ClassInstanceResponse, status_code=status.HTTP_201_CREATED)
async def upsert_class(
    data: ClassInstanceUpsert,
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    """Ingest a class instance from the schedule generator (create or update)."""
    instance = await registry_service.upsert_class_instance(
        db,
        ctx,
        studio_id=data.studio_id,
        starts_at=data.starts_at,
        ends_at=data.ends_at,
        max_capacity=data.max_capacity,
        title=data.title,
        class_instance_id=data.id,
    )
    return await _class_response(db, instance.id)


@router.get("/{class_instance_id}", response_model=ClassInstanceResponse)
async def read_class(class_instance_id: int, db: AsyncSession = Depends(get_db)):
    return await _class_response(db, class_instance_id)


@router.patch("/{class_instance_id}/capacity", response_model=ClassInstanceResponse)
async def update_capacity(
    class_instance_id: int,
    data: CapacityUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    """Staff capacity change. Reductions never revoke existing bookings."""
    await registry_service.change_capacity(db, ctx, class_instance_id, data.max_capacity)
    return await _class_response(db, class_instance_id)


@router.post("/{class_instance_id}/cancel", response_model=ClassCancelResponse)
async def cancel_class(
    class_instance_id: int,
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    outcome = await registry_service.cancel_class_instance(db, ctx, class_instance_id)
    return ClassCancelResponse(
        class_instance_id=outcome.instance.id,
        status=outcome.instance.status,
        cancelled_reservations=outcome.cancelled_reservations,
    )


@router.post("/{class_instance_id}/complete", response_model=ClassCompletionResponse)
async def complete_class_now(
    class_instance_id: int,
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    """
    Staff close-out of a class in progress: members who never checked in
    become no-shows and the class is marked completed. Completing twice is
    a no-op.
    """
    report = await complete_class(db, ctx, class_instance_id, by_staff=True)
    return ClassCompletionResponse.model_validate(report)


@router.get("/{class_instance_id}/roster", response_model=list[RosterEntryResponse])
async def read_roster(class_instance_id: int, db: AsyncSession = Depends(get_db)):
    """Booked, confirmed and checked-in first, then promoted, then the waitlist by position."""
    entries = await list_roster(db, class_instance_id)
    return [RosterEntryResponse.model_validate(entry) for entry in entries]

"""
Reservation endpoints: book, drop-in, confirm/accept, cancel, member listing.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.api.deps import get_booking_context, get_idempotency_key
from studio_booking.db.session import get_db
from studio_booking.schemas.reservation import (
    DropInReservationCreate,
    ReservationCancel,
    ReservationConfirm,
    ReservationCreate,
    ReservationResponse,
)
from studio_booking.services import reservation_service
from studio_booking.services.context import Actor, BookingContext
from studio_booking.services.drop_in_service import book_drop_in

router = APIRouter(prefix="/reservations", tags=["Reservations"])


@router.post("", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    data: ReservationCreate,
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    """
    Reserve a seat. Returns `booked` when a seat was free, `waitlisted`
    (with its position) when the class is full.

    Send an `Idempotency-Key` header to make retries safe: the same key
    returns the same reservation.
    """
    return await reservation_service.reserve(db, ctx, data.class_instance_id, data.member_id, idempotency_key)


@router.post("/drop-in", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def create_drop_in_reservation(
    data: DropInReservationCreate,
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    """Authorize a drop-in payment and reserve with it; the hold is voided if booking fails."""
    return await book_drop_in(
        db, ctx, data.class_instance_id, data.member_id, data.payment_method_id, idempotency_key
    )


@router.get("", response_model=list[ReservationResponse])
async def list_member_reservations(
    member_id: int = Query(..., gt=0),
    upcoming: bool = Query(True, description="Only live reservations for classes that have not started"),
    db: AsyncSession = Depends(get_db),
):
    """A member's reservations, soonest class first (or full history, newest first)."""
    return await reservation_service.list_member_reservations(db, member_id, upcoming_only=upcoming)


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def read_reservation(reservation_id: int, db: AsyncSession = Depends(get_db)):
    return await reservation_service.get_reservation(db, reservation_id)


@router.post("/{reservation_id}/confirm", response_model=ReservationResponse)
async def confirm_reservation(
    reservation_id: int,
    data: ReservationConfirm = Body(default_factory=ReservationConfirm),
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    """Confirm a booked reservation, or accept a waitlist promotion."""
    return await reservation_service.confirm(db, ctx, reservation_id, data.member_id)


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(
    reservation_id: int,
    data: ReservationCancel,
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
    ctx: BookingContext = Depends(get_booking_context),
):
    actor = Actor.member(data.actor_id) if data.actor == "member" else Actor.staff(data.actor_id)
    return await reservation_service.cancel(db, ctx, reservation_id, actor, idempotency_key)

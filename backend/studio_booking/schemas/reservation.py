"""
Pydantic schemas for reservation request/response validation.
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field

from studio_booking.models.entitlement import EntitlementKind
from studio_booking.models.status import CancellationReason, ReservationStatus


class ReservationCreate(BaseModel):
    class_instance_id: int
    member_id: int


class DropInReservationCreate(ReservationCreate):
    payment_method_id: str = Field(..., min_length=1, max_length=128)


class ReservationConfirm(BaseModel):
    member_id: Optional[int] = None


class ReservationCancel(BaseModel):
    actor: Literal["member", "staff"] = "member"
    actor_id: int


class ReservationResponse(BaseModel):
    id: int
    class_instance_id: int
    member_id: int
    status: ReservationStatus
    created_at: datetime
    confirmed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[CancellationReason]
    entitlement_kind: Optional[EntitlementKind]
    entitlement_ref: Optional[str]
    entitlement_consumed: bool
    waitlist_position: Optional[int]
    promoted_at: Optional[datetime]
    promotion_deadline: Optional[datetime]
    checked_in_at: Optional[datetime]
    walk_in: bool

    model_config = {"from_attributes": True}

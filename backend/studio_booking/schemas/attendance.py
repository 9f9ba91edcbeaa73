"""
Pydantic schemas for check-in, walk-ins and the roster.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from studio_booking.schemas.reservation import ReservationResponse


class CheckInRequest(BaseModel):
    # Staff identifier, or "self" for a member checking themselves in
    checked_in_by: str = Field("self", min_length=1, max_length=64)


class BatchCheckInRequest(BaseModel):
    reservation_ids: list[int] = Field(..., min_length=1, max_length=500)
    staff_id: str = Field(..., min_length=1, max_length=64)


class WalkInRequest(BaseModel):
    member_id: int
    staff_id: str = Field(..., min_length=1, max_length=64)


class AttendanceResponse(BaseModel):
    id: int
    reservation_id: int
    class_instance_id: int
    member_id: int
    checked_in: bool
    checked_in_at: datetime
    checked_in_by: str
    walk_in: bool

    model_config = {"from_attributes": True}


class CheckInItemResult(BaseModel):
    reservation_id: int
    ok: bool
    attendance: Optional[AttendanceResponse] = None
    error: Optional[str] = None
    detail: Optional[str] = None

    model_config = {"from_attributes": True}


class RosterEntryResponse(BaseModel):
    reservation: ReservationResponse
    attendance: Optional[AttendanceResponse] = None

    model_config = {"from_attributes": True}


class SweepResponse(BaseModel):
    ran_at: datetime
    promotions_expired: int
    requeued: int
    promoted: int
    notifications_retried: int
    reminders_sent: int
    classes_completed: int
    no_shows: int

    model_config = {"from_attributes": True}

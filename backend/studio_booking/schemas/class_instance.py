"""
Pydantic schemas for class instance ingest and capacity management.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, model_validator

from studio_booking.models.status import ClassStatus


class ClassInstanceUpsert(BaseModel):
    id: Optional[int] = Field(None, gt=0)
    studio_id: int
    title: Optional[str] = Field(None, max_length=255)
    starts_at: datetime
    ends_at: datetime
    max_capacity: int = Field(..., ge=0, le=10000)

    @model_validator(mode="after")
    def check_window(self):
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class CapacityUpdate(BaseModel):
    max_capacity: int = Field(..., ge=0, le=10000)


class ClassInstanceResponse(BaseModel):
    id: int
    studio_id: int
    title: Optional[str]
    starts_at: datetime
    ends_at: datetime
    max_capacity: int
    status: ClassStatus
    booked_count: int
    held_count: int
    waitlist_count: int
    available_seats: int


class ClassCancelResponse(BaseModel):
    class_instance_id: int
    status: ClassStatus
    cancelled_reservations: int


class ClassCompletionResponse(BaseModel):
    class_instance_id: int
    status: ClassStatus
    no_shows: int
    expired: int
    attended: int

    model_config = {"from_attributes": True}

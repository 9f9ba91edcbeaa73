from studio_booking.schemas.reservation import (
    DropInReservationCreate,
    ReservationCancel,
    ReservationConfirm,
    ReservationCreate,
    ReservationResponse,
)
from studio_booking.schemas.class_instance import (
    CapacityUpdate,
    ClassCancelResponse,
    ClassCompletionResponse,
    ClassInstanceResponse,
    ClassInstanceUpsert,
)
from studio_booking.schemas.attendance import (
    AttendanceResponse,
    BatchCheckInRequest,
    CheckInItemResult,
    CheckInRequest,
    RosterEntryResponse,
    SweepResponse,
    WalkInRequest,
)

__all__ = [
    "DropInReservationCreate", "ReservationCancel", "ReservationConfirm",
    "ReservationCreate", "ReservationResponse",
    "CapacityUpdate", "ClassCancelResponse", "ClassCompletionResponse", "ClassInstanceResponse",
    "ClassInstanceUpsert",
    "AttendanceResponse", "BatchCheckInRequest", "CheckInItemResult", "CheckInRequest",
    "RosterEntryResponse", "SweepResponse", "WalkInRequest",
]

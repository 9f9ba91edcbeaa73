from studio_booking.models.class_instance import ClassInstance, ClassCapacity
from studio_booking.models.entitlement import EntitlementKind, MemberEntitlement
from studio_booking.models.reservation import Reservation
from studio_booking.models.attendance import AttendanceRecord
from studio_booking.models.studio_policy import StudioPolicyRecord
from studio_booking.models.idempotency import IdempotencyRecord
from studio_booking.models.status import (
    CancellationReason,
    ClassStatus,
    ReservationEvent,
    ReservationStatus,
)

__all__ = [
    "ClassInstance", "ClassCapacity",
    "EntitlementKind", "MemberEntitlement",
    "Reservation", "AttendanceRecord",
    "StudioPolicyRecord", "IdempotencyRecord",
    "CancellationReason", "ClassStatus", "ReservationEvent", "ReservationStatus",
]

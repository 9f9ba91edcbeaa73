"""
Attendance record written at check-in.

One record per reservation. Walk-ins get a reservation too (created and
checked in together), so every attendee is traceable to a seat.
"""

from sqlalchemy import Boolean, Column, Integer, String, ForeignKey, UniqueConstraint

from studio_booking.db.base import Base, TimestampMixin, UTCDateTime

SELF_CHECK_IN = "self"


class AttendanceRecord(Base, TimestampMixin):
    __tablename__ = "attendance_records"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False)
    class_instance_id = Column(Integer, ForeignKey("class_instances.id"), nullable=False, index=True)
    member_id = Column(Integer, nullable=False, index=True)
    checked_in = Column(Boolean, nullable=False, default=True)
    checked_in_at = Column(UTCDateTime, nullable=False)
    checked_in_by = Column(String(64), nullable=False)  # staff id or "self"
    walk_in = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("reservation_id", name="uq_attendance_reservation"),
    )

    def __repr__(self) -> str:
        return f"<AttendanceRecord(reservation={self.reservation_id}, by={self.checked_in_by}, walk_in={self.walk_in})>"

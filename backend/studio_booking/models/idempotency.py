"""
Client-supplied idempotency keys for reserve / cancel / check-in.

The record is inserted in the same transaction as the state change it
guards, so a retried request either finds it (and replays the result) or
collides on the unique constraint.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint

from studio_booking.db.base import Base, TimestampMixin


class IdempotencyRecord(Base, TimestampMixin):
    __tablename__ = "idempotency_records"

    id = Column(Integer, primary_key=True, index=True)
    operation = Column(String(20), nullable=False)  # reserve, cancel, check_in
    key = Column(String(128), nullable=False)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False)
    attendance_id = Column(Integer, ForeignKey("attendance_records.id"), nullable=True)

    __table_args__ = (
        UniqueConstraint("operation", "key", name="uq_idempotency_operation_key"),
    )

    def __repr__(self) -> str:
        return f"<IdempotencyRecord(operation={self.operation}, key={self.key}, reservation={self.reservation_id})>"

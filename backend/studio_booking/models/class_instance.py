"""
Class instance and its capacity ledger.

Key design decisions:
- ClassInstance is produced by the upstream schedule generator; this service
  only re-reads it (status, window, max_capacity) inside every claim.
- ClassCapacity is owned by the reservation engine. Its counters mirror the
  reservation table and its `version` column is the optimistic lock that
  serializes capacity and waitlist read-modify-writes per class instance.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Index, CheckConstraint

from studio_booking.db.base import Base, TimestampMixin, UTCDateTime, enum_type
from studio_booking.models.status import ClassStatus


class ClassInstance(Base, TimestampMixin):
    __tablename__ = "class_instances"

    id = Column(Integer, primary_key=True, index=True)
    studio_id = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=True)
    starts_at = Column(UTCDateTime, nullable=False)
    ends_at = Column(UTCDateTime, nullable=False)
    max_capacity = Column(Integer, nullable=False)
    status = Column(enum_type(ClassStatus, "class_status"), nullable=False, default=ClassStatus.SCHEDULED)

    __table_args__ = (
        CheckConstraint("max_capacity >= 0", name="check_max_capacity_non_negative"),
        CheckConstraint("ends_at > starts_at", name="check_class_window"),
        # Completion sweep scans by end time
        Index("ix_class_instances_ends_at", "ends_at"),
    )

    def __repr__(self) -> str:
        return f"<ClassInstance(id={self.id}, studio={self.studio_id}, status={self.status}, cap={self.max_capacity})>"


class ClassCapacity(Base):
    __tablename__ = "class_capacity"

    class_instance_id = Column(Integer, ForeignKey("class_instances.id"), primary_key=True)
    booked_count = Column(Integer, nullable=False, default=0)
    held_count = Column(Integer, nullable=False, default=0)
    waitlist_count = Column(Integer, nullable=False, default=0)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    # Set once the completion sweep has reconciled this class
    swept_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("booked_count >= 0", name="check_booked_count_non_negative"),
        CheckConstraint("held_count >= 0", name="check_held_count_non_negative"),
        CheckConstraint("waitlist_count >= 0", name="check_waitlist_count_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<ClassCapacity(class={self.class_instance_id}, booked={self.booked_count}, "
            f"held={self.held_count}, waitlist={self.waitlist_count}, v={self.version})>"
        )

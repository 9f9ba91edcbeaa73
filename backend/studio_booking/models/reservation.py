"""
Reservation ("booking") model.

Key design decisions:
- Partial unique index on (class_instance_id, member_id) over live statuses
  enforces one live reservation per member per class
- Rows are never deleted; terminal statuses keep the audit trail
- `version` is the ORM version_id_col, so two requests racing on the same
  reservation (cancel vs check-in) cannot both win
- waitlist_position is only set while status = waitlisted
"""

from sqlalchemy import Boolean, Column, Integer, String, ForeignKey, Index, CheckConstraint, text

from studio_booking.db.base import Base, TimestampMixin, UTCDateTime, enum_type
from studio_booking.models.entitlement import EntitlementKind
from studio_booking.models.status import CancellationReason, ReservationStatus

_INACTIVE_SQL = "status NOT IN ('cancelled', 'no_show', 'expired')"


class Reservation(Base, TimestampMixin):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    class_instance_id = Column(Integer, ForeignKey("class_instances.id"), nullable=False, index=True)
    member_id = Column(Integer, nullable=False, index=True)
    status = Column(enum_type(ReservationStatus, "reservation_status"), nullable=False)

    confirmed_at = Column(UTCDateTime, nullable=True)
    confirmation_reminded_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(enum_type(CancellationReason, "cancellation_reason"), nullable=True)

    # Which pass / subscription / comp credit / payment authorization backs the seat
    entitlement_kind = Column(enum_type(EntitlementKind, "entitlement_kind"), nullable=True)
    entitlement_ref = Column(String(64), nullable=True)
    entitlement_consumed = Column(Boolean, nullable=False, default=False)

    waitlist_position = Column(Integer, nullable=True)
    promoted_at = Column(UTCDateTime, nullable=True)
    promotion_deadline = Column(UTCDateTime, nullable=True)
    promotion_notified_at = Column(UTCDateTime, nullable=True)

    checked_in_at = Column(UTCDateTime, nullable=True)
    walk_in = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_reservations_member_live",
            "class_instance_id",
            "member_id",
            unique=True,
            postgresql_where=text(_INACTIVE_SQL),
            sqlite_where=text(_INACTIVE_SQL),
        ),
        # Waitlist reads: "class X, status waitlisted, ordered by position"
        Index("ix_reservations_class_status_position", "class_instance_id", "status", "waitlist_position"),
        # Promotion expiry sweep
        Index("ix_reservations_status_deadline", "status", "promotion_deadline"),
        # Confirmation reminder sweep
        Index("ix_reservations_reminder_due", "status", "confirmation_reminded_at"),
        CheckConstraint(
            "waitlist_position IS NULL OR waitlist_position >= 0",
            name="check_waitlist_position_non_negative",
        ),
        CheckConstraint("status <> 'requested'", name="check_reservation_not_transient"),
    )

    def __repr__(self) -> str:
        return (
            f"<Reservation(id={self.id}, class={self.class_instance_id}, member={self.member_id}, "
            f"status={self.status}, position={self.waitlist_position})>"
        )

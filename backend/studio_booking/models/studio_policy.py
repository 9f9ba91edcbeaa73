"""
Per-studio policy overrides. NULL columns fall back to the configured defaults.
"""

from sqlalchemy import Boolean, Column, Float, Integer, String, CheckConstraint

from studio_booking.db.base import Base, TimestampMixin


class StudioPolicyRecord(Base, TimestampMixin):
    __tablename__ = "studio_policies"

    studio_id = Column(Integer, primary_key=True)
    cancellation_window_hours = Column(Float, nullable=True)
    late_cancel_fee_cents = Column(Integer, nullable=True)
    confirmation_window_hours = Column(Float, nullable=True)
    promotion_window_minutes = Column(Integer, nullable=True)
    expired_promotion_policy = Column(String(20), nullable=True)
    waitlist_enabled = Column(Boolean, nullable=True)
    walk_ins_enabled = Column(Boolean, nullable=True)
    walk_in_requires_entitlement = Column(Boolean, nullable=True)
    drop_in_price_cents = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "expired_promotion_policy IS NULL OR expired_promotion_policy IN ('drop', 'requeue')",
            name="check_expired_promotion_policy",
        ),
        CheckConstraint(
            "late_cancel_fee_cents IS NULL OR late_cancel_fee_cents >= 0",
            name="check_late_cancel_fee_non_negative",
        ),
    )

    def __repr__(self) -> str:
        return f"<StudioPolicyRecord(studio={self.studio_id})>"

"""
Member entitlement balances (local projection of membership billing).

`remaining` is NULL for unlimited subscriptions; decrementing NULL stays
NULL in SQL, so one guarded UPDATE consumes both metered and unlimited
entitlements.
"""

import enum

from sqlalchemy import Boolean, Column, Integer, Index, CheckConstraint

from studio_booking.db.base import Base, TimestampMixin, UTCDateTime, enum_type


class EntitlementKind(str, enum.Enum):
    COMP_CREDIT = "comp_credit"
    CLASS_PACK = "class_pack"
    SUBSCRIPTION = "subscription"
    DROP_IN = "drop_in"  # backed by a payment authorization, never stored here


class MemberEntitlement(Base, TimestampMixin):
    __tablename__ = "member_entitlements"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, nullable=False)
    studio_id = Column(Integer, nullable=False)
    kind = Column(enum_type(EntitlementKind, "entitlement_kind"), nullable=False)
    remaining = Column(Integer, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("remaining IS NULL OR remaining >= 0", name="check_entitlement_remaining_non_negative"),
        CheckConstraint("kind <> 'drop_in'", name="check_entitlement_not_drop_in"),
        Index("ix_member_entitlements_lookup", "member_id", "studio_id", "kind"),
    )

    def __repr__(self) -> str:
        return f"<MemberEntitlement(id={self.id}, member={self.member_id}, kind={self.kind}, remaining={self.remaining})>"

"""
Resolves the StudioPolicy for a studio.
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.policy import ExpiredPromotionPolicy, StudioPolicy
from studio_booking.models.studio_policy import StudioPolicyRecord


class PolicyStore(ABC):
    @abstractmethod
    async def for_studio(self, db: AsyncSession, studio_id: int) -> StudioPolicy:
        pass


class DatabasePolicyStore(PolicyStore):
    """Configured defaults, overridden column by column from `studio_policies`."""

    def __init__(self, defaults: StudioPolicy):
        self.defaults = defaults

    async def for_studio(self, db: AsyncSession, studio_id: int) -> StudioPolicy:
        record = await db.get(StudioPolicyRecord, studio_id)
        if record is None:
            return self.defaults
        return replace(self.defaults, **_overrides(record))


class StaticPolicyStore(PolicyStore):
    """Fixed policies, e.g. for tests or single-studio deployments."""

    def __init__(self, default: Optional[StudioPolicy] = None, per_studio: Optional[dict[int, StudioPolicy]] = None):
        self.default = default or StudioPolicy()
        self.per_studio = dict(per_studio or {})

    async def for_studio(self, db: AsyncSession, studio_id: int) -> StudioPolicy:
        return self.per_studio.get(studio_id, self.default)


def _overrides(record: StudioPolicyRecord) -> dict:
    overrides = {}
    if record.cancellation_window_hours is not None:
        overrides["cancellation_window"] = timedelta(hours=record.cancellation_window_hours)
    if record.late_cancel_fee_cents is not None:
        overrides["late_cancel_fee_cents"] = record.late_cancel_fee_cents
    if record.confirmation_window_hours is not None:
        overrides["confirmation_window"] = timedelta(hours=record.confirmation_window_hours)
    if record.promotion_window_minutes is not None:
        overrides["promotion_window"] = timedelta(minutes=record.promotion_window_minutes)
    if record.expired_promotion_policy is not None:
        overrides["expired_promotion_policy"] = ExpiredPromotionPolicy(record.expired_promotion_policy)

    for flag in ("waitlist_enabled", "walk_ins_enabled", "walk_in_requires_entitlement"):
        value = getattr(record, flag)
        if value is not None:
            overrides[flag] = value

    if record.drop_in_price_cents is not None:
        overrides["drop_in_price_cents"] = record.drop_in_price_cents
    if record.currency is not None:
        overrides["currency"] = record.currency
    return overrides

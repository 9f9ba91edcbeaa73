"""
Per-studio booking policy.

Cancellation cutoff, late fee, confirmation window, promotion deadline and
walk-in eligibility are data, not code. A StudioPolicy is resolved per
studio (see services/policy_service.py) and handed to every engine call.
"""

import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from studio_booking.core.config import Settings


class ExpiredPromotionPolicy(str, enum.Enum):
    """What happens to a member who let a promotion lapse."""

    DROP = "drop"
    REQUEUE = "requeue"  # back to the end of the waitlist


@dataclass(frozen=True)
class StudioPolicy:
    cancellation_window: timedelta = timedelta(hours=12)
    late_cancel_fee_cents: int = 0
    confirmation_window: timedelta = timedelta(hours=24)
    promotion_window: timedelta = timedelta(hours=2)
    expired_promotion_policy: ExpiredPromotionPolicy = ExpiredPromotionPolicy.DROP
    waitlist_enabled: bool = True
    walk_ins_enabled: bool = True
    walk_in_requires_entitlement: bool = True
    drop_in_price_cents: Optional[int] = None
    currency: str = "usd"

    @classmethod
    def from_settings(cls, settings: Settings) -> "StudioPolicy":
        return cls(
            cancellation_window=timedelta(hours=settings.DEFAULT_CANCELLATION_WINDOW_HOURS),
            late_cancel_fee_cents=settings.DEFAULT_LATE_CANCEL_FEE_CENTS,
            confirmation_window=timedelta(hours=settings.DEFAULT_CONFIRMATION_WINDOW_HOURS),
            promotion_window=timedelta(minutes=settings.DEFAULT_PROMOTION_WINDOW_MINUTES),
            expired_promotion_policy=ExpiredPromotionPolicy(settings.DEFAULT_EXPIRED_PROMOTION_POLICY),
            waitlist_enabled=settings.DEFAULT_WAITLIST_ENABLED,
            walk_ins_enabled=settings.DEFAULT_WALK_INS_ENABLED,
            walk_in_requires_entitlement=settings.DEFAULT_WALK_IN_REQUIRES_ENTITLEMENT,
            drop_in_price_cents=settings.DEFAULT_DROP_IN_PRICE_CENTS,
            currency=settings.DEFAULT_CURRENCY,
        )

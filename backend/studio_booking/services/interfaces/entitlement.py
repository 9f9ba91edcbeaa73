"""
Entitlement provider interface.
Lets the gate consult comp credits, class packs, subscriptions and drop-in
payments uniformly, so new entitlement types plug in without touching the
reservation engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.models.entitlement import EntitlementKind


@dataclass(frozen=True)
class EntitlementRequest:
    member_id: int
    studio_id: int
    now: datetime
    payment_authorization_id: Optional[str] = None


@dataclass(frozen=True)
class EntitlementGrant:
    kind: EntitlementKind
    source_id: str


class EntitlementProvider(ABC):
    """
    Interface for entitlement providers.

    Implementations:
    - CompCreditProvider: free classes granted by staff
    - ClassPackProvider: prepaid packs, oldest first
    - SubscriptionProvider: unlimited or per-period metered subscriptions
    - DropInPaymentProvider: a payment authorization obtained up front

    find/try_consume/refund run inside the caller's transaction and must not
    make network calls. settle/release run after commit.
    """

    kind: EntitlementKind

    @abstractmethod
    async def find(self, db: AsyncSession, request: EntitlementRequest) -> Optional[EntitlementGrant]:
        """
        Look for an entitlement this provider can grant.

        Returns:
            A grant describing what would be consumed, or None
        """
        pass

    @abstractmethod
    async def try_consume(self, db: AsyncSession, grant: EntitlementGrant, request: EntitlementRequest) -> bool:
        """
        Atomically consume one use of `grant`.

        Returns:
            True if consumed, False if it was used up or expired meanwhile
        """
        pass

    @abstractmethod
    async def refund(self, db: AsyncSession, grant: EntitlementGrant) -> None:
        """Give back one use of a consumed grant."""
        pass

    async def settle(self, grant: EntitlementGrant) -> None:
        """External settlement after a consumed grant is committed."""
        return None

    async def release(self, grant: EntitlementGrant, consumed: bool) -> None:
        """External release of a grant that will not (or no longer) back a seat."""
        return None

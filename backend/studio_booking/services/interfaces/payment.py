"""
Payment authority interface.
The engine never moves money itself; it asks the payment authority to
authorize, capture, void or refund, and to charge late-cancel fees.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PaymentAuthorization:
    id: str
    amount_cents: int
    currency: str


class PaymentAuthority(ABC):
    """
    Interface for the external payment authority.

    Implementations:
    - HttpPaymentAuthority: JSON API over httpx (infrastructure/payment_client.py)
    """

    @abstractmethod
    async def authorize(
        self,
        member_id: int,
        studio_id: int,
        amount_cents: int,
        currency: str,
        payment_method_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PaymentAuthorization:
        """
        Place a hold for a drop-in.

        Raises:
            PaymentDeclined: the authority refused the charge
            NoDropInPlanConfigured: the studio has no drop-in pricing
        """
        pass

    @abstractmethod
    async def capture(self, authorization_id: str) -> None:
        pass

    @abstractmethod
    async def void(self, authorization_id: str) -> None:
        pass

    @abstractmethod
    async def refund(self, authorization_id: str) -> None:
        pass

    @abstractmethod
    async def charge_fee(
        self,
        member_id: int,
        studio_id: int,
        amount_cents: int,
        currency: str,
        reference: str,
    ) -> str:
        """Charge a one-off fee (late cancellation). Returns the charge id."""
        pass

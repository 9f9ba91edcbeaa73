"""
Everything the engine needs from outside the database, passed in explicitly.
"""

import enum
from dataclasses import dataclass

from studio_booking.services.entitlement_service import EntitlementGate, build_entitlement_gate
from studio_booking.services.interfaces.notifier import Notifier
from studio_booking.services.interfaces.payment import PaymentAuthority
from studio_booking.services.policy_service import PolicyStore


@dataclass
class BookingContext:
    gate: EntitlementGate
    notifier: Notifier
    payments: PaymentAuthority
    policies: PolicyStore


def build_booking_context(notifier: Notifier, payments: PaymentAuthority, policies: PolicyStore) -> BookingContext:
    return BookingContext(
        gate=build_entitlement_gate(payments),
        notifier=notifier,
        payments=payments,
        policies=policies,
    )


class ActorRole(str, enum.Enum):
    MEMBER = "member"
    STAFF = "staff"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who asked for a state change. Members may only touch their own reservations."""

    role: ActorRole
    id: int = 0

    @classmethod
    def member(cls, member_id: int) -> "Actor":
        return cls(ActorRole.MEMBER, member_id)

    @classmethod
    def staff(cls, staff_id: int) -> "Actor":
        return cls(ActorRole.STAFF, staff_id)

    @property
    def is_member(self) -> bool:
        return self.role is ActorRole.MEMBER

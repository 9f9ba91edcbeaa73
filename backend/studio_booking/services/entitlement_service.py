"""
Entitlement gate: "may this member occupy a seat without a fresh charge?"

Providers are consulted in priority order:
  1. comp credits      (free classes, soonest-expiring first)
  2. class packs       (oldest pack first)
  3. subscriptions     (unlimited, or metered per period)
  4. drop-in payment   (only if the caller already holds an authorization)

quote() runs before the capacity claim and never writes. consume() runs
inside the claim transaction; if the quoted grant was used up by a
concurrent booking it falls through the remaining providers in order.
"""

from typing import Iterable, Optional, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import EntitlementRequired
from studio_booking.core.logging import get_logger
from studio_booking.models.entitlement import EntitlementKind, MemberEntitlement
from studio_booking.services.interfaces.entitlement import (
    EntitlementGrant,
    EntitlementProvider,
    EntitlementRequest,
)
from studio_booking.services.interfaces.payment import PaymentAuthority

logger = get_logger(__name__)


class BalanceEntitlementProvider(EntitlementProvider):
    """Entitlements stored as a (possibly unlimited) balance in member_entitlements."""

    kind: EntitlementKind

    def _ordering(self) -> Iterable:
        return (MemberEntitlement.id.asc(),)

    def _usable(self, request: EntitlementRequest):
        return (
            MemberEntitlement.member_id == request.member_id,
            MemberEntitlement.studio_id == request.studio_id,
            MemberEntitlement.kind == self.kind,
            MemberEntitlement.active.is_(True),
            or_(MemberEntitlement.remaining.is_(None), MemberEntitlement.remaining > 0),
            or_(MemberEntitlement.expires_at.is_(None), MemberEntitlement.expires_at > request.now),
        )

    async def find(self, db: AsyncSession, request: EntitlementRequest) -> Optional[EntitlementGrant]:
        result = await db.execute(
            select(MemberEntitlement.id)
            .where(*self._usable(request))
            .order_by(*self._ordering())
            .limit(1)
        )
        entitlement_id = result.scalar_one_or_none()
        if entitlement_id is None:
            return None
        return EntitlementGrant(kind=self.kind, source_id=str(entitlement_id))

    async def try_consume(self, db: AsyncSession, grant: EntitlementGrant, request: EntitlementRequest) -> bool:
        # NULL - 1 stays NULL, so unlimited balances pass through unchanged
        result = await db.execute(
            update(MemberEntitlement)
            .where(MemberEntitlement.id == int(grant.source_id), *self._usable(request))
            .values(remaining=MemberEntitlement.remaining - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def refund(self, db: AsyncSession, grant: EntitlementGrant) -> None:
        await db.execute(
            update(MemberEntitlement)
            .where(MemberEntitlement.id == int(grant.source_id))
            .values(remaining=MemberEntitlement.remaining + 1)
            .execution_options(synchronize_session=False)
        )


class CompCreditProvider(BalanceEntitlementProvider):
    kind = EntitlementKind.COMP_CREDIT

    def _ordering(self) -> Iterable:
        # Soonest expiry first, never-expiring credits last
        return (
            MemberEntitlement.expires_at.is_(None),
            MemberEntitlement.expires_at.asc(),
            MemberEntitlement.id.asc(),
        )


class ClassPackProvider(BalanceEntitlementProvider):
    kind = EntitlementKind.CLASS_PACK

    def _ordering(self) -> Iterable:
        return (MemberEntitlement.created_at.asc(), MemberEntitlement.id.asc())


class SubscriptionProvider(BalanceEntitlementProvider):
    kind = EntitlementKind.SUBSCRIPTION

    def _ordering(self) -> Iterable:
        # Prefer unlimited plans so metered classes are not burnt needlessly
        return (MemberEntitlement.remaining.is_not(None), MemberEntitlement.id.asc())


class DropInPaymentProvider(EntitlementProvider):
    """A drop-in is backed by a payment authorization the caller obtained first."""

    kind = EntitlementKind.DROP_IN

    def __init__(self, payments: PaymentAuthority):
        self.payments = payments

    async def find(self, db: AsyncSession, request: EntitlementRequest) -> Optional[EntitlementGrant]:
        if not request.payment_authorization_id:
            return None
        return EntitlementGrant(kind=self.kind, source_id=request.payment_authorization_id)

    async def try_consume(self, db: AsyncSession, grant: EntitlementGrant, request: EntitlementRequest) -> bool:
        # The authorization already holds the funds; capture happens after commit
        return grant.source_id == request.payment_authorization_id

    async def refund(self, db: AsyncSession, grant: EntitlementGrant) -> None:
        return None

    async def settle(self, grant: EntitlementGrant) -> None:
        await self.payments.capture(grant.source_id)

    async def release(self, grant: EntitlementGrant, consumed: bool) -> None:
        if consumed:
            await self.payments.refund(grant.source_id)
        else:
            await self.payments.void(grant.source_id)


class EntitlementGate:
    def __init__(self, providers: Sequence[EntitlementProvider]):
        self.providers = list(providers)
        self._by_kind = {p.kind: p for p in self.providers}

    def provider_for(self, kind: EntitlementKind) -> EntitlementProvider:
        return self._by_kind[kind]

    async def quote(self, db: AsyncSession, request: EntitlementRequest) -> EntitlementGrant:
        """Pick the entitlement that would back a seat, without consuming it."""
        for provider in self.providers:
            grant = await provider.find(db, request)
            if grant is not None:
                logger.debug("entitlement_quoted", member_id=request.member_id, kind=grant.kind.value)
                return grant

        logger.info("entitlement_missing", member_id=request.member_id, studio_id=request.studio_id)
        raise EntitlementRequired(
            "No class pass, credit or subscription available. Purchase a drop-in to book this class."
        )

    async def consume(
        self,
        db: AsyncSession,
        request: EntitlementRequest,
        preferred: Optional[EntitlementGrant] = None,
    ) -> EntitlementGrant:
        """Consume `preferred` if still usable, else the next provider that can."""
        if preferred is not None:
            if await self.provider_for(preferred.kind).try_consume(db, preferred, request):
                return preferred

        for provider in self.providers:
            grant = await provider.find(db, request)
            if grant is not None and await provider.try_consume(db, grant, request):
                return grant

        raise EntitlementRequired("Entitlement was used up before the seat could be claimed")

    async def refund(self, db: AsyncSession, grant: EntitlementGrant) -> None:
        await self.provider_for(grant.kind).refund(db, grant)
        logger.info("entitlement_refunded", kind=grant.kind.value, source_id=grant.source_id)

    async def settle(self, grant: EntitlementGrant) -> None:
        await self.provider_for(grant.kind).settle(grant)

    async def release(self, grant: EntitlementGrant, consumed: bool) -> None:
        await self.provider_for(grant.kind).release(grant, consumed)


def build_entitlement_gate(payments: PaymentAuthority) -> EntitlementGate:
    return EntitlementGate([
        CompCreditProvider(),
        ClassPackProvider(),
        SubscriptionProvider(),
        DropInPaymentProvider(payments),
    ])


def grant_of(reservation) -> Optional[EntitlementGrant]:
    """The entitlement recorded on a reservation, if any."""
    if reservation.entitlement_kind is None or reservation.entitlement_ref is None:
        return None
    return EntitlementGrant(kind=reservation.entitlement_kind, source_id=reservation.entitlement_ref)


def attach_grant(reservation, grant: Optional[EntitlementGrant], consumed: bool) -> None:
    if grant is None:
        return
    reservation.entitlement_kind = grant.kind
    reservation.entitlement_ref = grant.source_id
    reservation.entitlement_consumed = consumed


def request_for(reservation, studio_id: int, now) -> EntitlementRequest:
    """Entitlement request for a reservation that already carries a quote."""
    authorization_id = None
    if reservation.entitlement_kind is EntitlementKind.DROP_IN:
        authorization_id = reservation.entitlement_ref
    return EntitlementRequest(
        member_id=reservation.member_id,
        studio_id=studio_id,
        now=now,
        payment_authorization_id=authorization_id,
    )

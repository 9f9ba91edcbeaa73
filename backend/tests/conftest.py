"""
Pytest fixtures for test database, client, and collaborator fakes.

Each test gets its own SQLite file (aiosqlite), so several sessions can
run against it at once and exercise the real versioned-write conflicts.
"""

import os

os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "test")

import itertools
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_booking.main import app
from studio_booking.api.deps import get_booking_context
from studio_booking.core.exceptions import NoDropInPlanConfigured, PaymentDeclined
from studio_booking.core.policy import StudioPolicy
from studio_booking.db.base import Base, utcnow
from studio_booking.db.session import build_engine, get_db
from studio_booking.models.class_instance import ClassInstance
from studio_booking.models.entitlement import EntitlementKind, MemberEntitlement
from studio_booking.services.context import BookingContext, build_booking_context
from studio_booking.services.interfaces.notifier import Notification, NotificationKind, Notifier
from studio_booking.services.interfaces.payment import PaymentAuthority, PaymentAuthorization
from studio_booking.services.policy_service import StaticPolicyStore
from studio_booking.services.registry_service import get_class_instance, upsert_class_instance


class FakeNotifier(Notifier):
    def __init__(self):
        self.sent: list[Notification] = []
        self.failing = False

    async def send(self, notification: Notification) -> None:
        if self.failing:
            raise ConnectionError("notifier unreachable")
        self.sent.append(notification)

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        return [n for n in self.sent if n.kind is kind]


class FakePaymentAuthority(PaymentAuthority):
    def __init__(self):
        self._ids = itertools.count(1)
        self.authorized: list[PaymentAuthorization] = []
        self.captured: list[str] = []
        self.voided: list[str] = []
        self.refunded: list[str] = []
        self.fees: list[tuple[int, int, str]] = []
        self.decline = False
        self.no_drop_in_plan = False

    async def authorize(self, member_id, studio_id, amount_cents, currency, payment_method_id, idempotency_key=None):
        if self.no_drop_in_plan:
            raise NoDropInPlanConfigured("no drop-in plan")
        if self.decline:
            raise PaymentDeclined("card declined")
        authorization = PaymentAuthorization(id=f"auth_{next(self._ids)}", amount_cents=amount_cents, currency=currency)
        self.authorized.append(authorization)
        return authorization

    async def capture(self, authorization_id):
        self.captured.append(authorization_id)

    async def void(self, authorization_id):
        self.voided.append(authorization_id)

    async def refund(self, authorization_id):
        self.refunded.append(authorization_id)

    async def charge_fee(self, member_id, studio_id, amount_cents, currency, reference):
        self.fees.append((member_id, amount_cents, reference))
        return f"fee_{len(self.fees)}"


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Fresh database file per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'studio_booking_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def payments() -> FakePaymentAuthority:
    return FakePaymentAuthority()


@pytest.fixture
def policy() -> StudioPolicy:
    """Default studio policy; override in a test module to change it."""
    return StudioPolicy()


@pytest.fixture
def ctx(notifier, payments, policy) -> BookingContext:
    return build_booking_context(notifier=notifier, payments=payments, policies=StaticPolicyStore(policy))


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, ctx) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client wired to the test database and the fake collaborators."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_booking_context] = lambda: ctx

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_class(db_session, ctx):
    """Create a class instance starting `starts_in` from now."""

    async def _make(
        max_capacity: int = 2,
        starts_in: timedelta = timedelta(days=2),
        duration: timedelta = timedelta(hours=1),
        studio_id: int = 1,
    ) -> ClassInstance:
        starts_at = utcnow() + starts_in
        return await upsert_class_instance(
            db_session,
            ctx,
            studio_id=studio_id,
            starts_at=starts_at,
            ends_at=starts_at + duration,
            max_capacity=max_capacity,
            title="Vinyasa Flow",
        )

    return _make


@pytest.fixture
def grant(db_session):
    """Give a member an entitlement (unlimited subscription by default)."""

    async def _grant(
        member_id: int,
        kind: EntitlementKind = EntitlementKind.SUBSCRIPTION,
        remaining: Optional[int] = None,
        studio_id: int = 1,
        expires_at: Optional[datetime] = None,
    ) -> MemberEntitlement:
        entitlement = MemberEntitlement(
            member_id=member_id,
            studio_id=studio_id,
            kind=kind,
            remaining=remaining,
            expires_at=expires_at,
            active=True,
        )
        db_session.add(entitlement)
        await db_session.commit()
        return entitlement

    return _grant


@pytest.fixture
def counts(db_session):
    """(booked, held, waitlist) as stored on the capacity ledger."""

    async def _counts(class_instance_id: int) -> tuple[int, int, int]:
        _, capacity = await get_class_instance(db_session, class_instance_id)
        return capacity.booked_count, capacity.held_count, capacity.waitlist_count

    return _counts

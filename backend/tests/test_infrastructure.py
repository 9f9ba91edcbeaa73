"""
Tests for the payment authority client, the notifiers and the policy store.
"""

import json
from datetime import timedelta

import httpx
import pytest

from studio_booking.core.exceptions import NoDropInPlanConfigured, PaymentDeclined
from studio_booking.core.policy import ExpiredPromotionPolicy, StudioPolicy
from studio_booking.infrastructure.notifier import LogNotifier, RedisStreamNotifier
from studio_booking.infrastructure.payment_client import HttpPaymentAuthority
from studio_booking.models.studio_policy import StudioPolicyRecord
from studio_booking.services.interfaces.notifier import Notification, NotificationKind
from studio_booking.services.policy_service import DatabasePolicyStore, StaticPolicyStore


def payment_client(handler) -> HttpPaymentAuthority:
    transport = httpx.MockTransport(handler)
    return HttpPaymentAuthority(httpx.AsyncClient(transport=transport, base_url="http://payments.test"))


@pytest.mark.asyncio
async def test_authorize_posts_drop_in_request():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "auth_42", "amount_cents": 1500, "currency": "usd"})

    authority = payment_client(handler)
    authorization = await authority.authorize(7, 1, 1500, "usd", "pm_card", idempotency_key="drop-7")
    await authority.aclose()

    assert authorization.id == "auth_42"
    assert authorization.amount_cents == 1500
    assert seen[0].url.path == "/v1/authorizations"
    assert seen[0].headers["Idempotency-Key"] == "drop-7"
    body = json.loads(seen[0].content)
    assert (body["member_id"], body["purpose"]) == (7, "drop_in")


@pytest.mark.asyncio
async def test_capture_void_and_refund_paths():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(204)

    authority = payment_client(handler)
    await authority.capture("auth_1")
    await authority.void("auth_2")
    await authority.refund("auth_3")

    assert paths == [
        "/v1/authorizations/auth_1/capture",
        "/v1/authorizations/auth_2/void",
        "/v1/authorizations/auth_3/refund",
    ]


@pytest.mark.asyncio
async def test_fee_uses_reference_as_idempotency_key():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Idempotency-Key"] == "late-cancel:9"
        return httpx.Response(201, json={"id": "ch_1"})

    charge_id = await payment_client(handler).charge_fee(3, 1, 1000, "usd", "late-cancel:9")

    assert charge_id == "ch_1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, code, expected",
    [
        (402, "card_declined", PaymentDeclined),
        (400, "insufficient_funds", PaymentDeclined),
        (402, None, PaymentDeclined),
        (422, "no_drop_in_plan", NoDropInPlanConfigured),
        (404, "drop_in_not_configured", NoDropInPlanConfigured),
    ],
)
async def test_error_codes_map_to_typed_exceptions(status, code, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"code": code, "message": "nope"}})

    with pytest.raises(expected):
        await payment_client(handler).authorize(1, 1, 1500, "usd", "pm_card")


@pytest.mark.asyncio
async def test_unexpected_errors_propagate():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream unavailable")

    with pytest.raises(httpx.HTTPStatusError):
        await payment_client(handler).capture("auth_1")


class RecordingRedis:
    def __init__(self):
        self.entries = []

    async def xadd(self, stream, fields, maxlen=None, approximate=True):
        self.entries.append((stream, fields, maxlen))
        return "1-0"


@pytest.mark.asyncio
async def test_redis_notifier_appends_to_capped_stream():
    client = RecordingRedis()

    async def connect():
        return client

    notifier = RedisStreamNotifier(connect, stream="notifications", maxlen=50)
    await notifier.send(
        Notification(NotificationKind.PROMOTED, member_id=2, class_instance_id=5, reservation_id=8, data={"a": 1})
    )

    stream, fields, maxlen = client.entries[0]
    assert (stream, maxlen) == ("notifications", 50)
    assert fields["kind"] == "waitlist_promoted"
    assert fields["reservation_id"] == "8"
    assert json.loads(fields["data"]) == {"a": 1}


@pytest.mark.asyncio
async def test_redis_notifier_raises_without_connection():
    async def connect():
        return None

    with pytest.raises(ConnectionError):
        await RedisStreamNotifier(connect).send(Notification(NotificationKind.BOOKED, 1, 1, 1))


@pytest.mark.asyncio
async def test_log_notifier_never_raises():
    await LogNotifier().send(Notification(NotificationKind.NO_SHOW, 1, 1, 1, data={"ended_at": "now"}))


@pytest.mark.asyncio
async def test_database_policy_overrides_only_set_columns(db_session):
    db_session.add(
        StudioPolicyRecord(
            studio_id=4,
            promotion_window_minutes=30,
            expired_promotion_policy="requeue",
            waitlist_enabled=False,
            drop_in_price_cents=2000,
        )
    )
    await db_session.commit()
    store = DatabasePolicyStore(StudioPolicy(late_cancel_fee_cents=500))

    overridden = await store.for_studio(db_session, 4)
    default = await store.for_studio(db_session, 5)

    assert overridden.promotion_window == timedelta(minutes=30)
    assert overridden.expired_promotion_policy is ExpiredPromotionPolicy.REQUEUE
    assert overridden.waitlist_enabled is False
    assert overridden.drop_in_price_cents == 2000
    assert overridden.late_cancel_fee_cents == 500
    assert overridden.cancellation_window == timedelta(hours=12)
    assert default == StudioPolicy(late_cancel_fee_cents=500)


@pytest.mark.asyncio
async def test_static_policy_store_per_studio(db_session):
    special = StudioPolicy(walk_ins_enabled=False)
    store = StaticPolicyStore(per_studio={2: special})

    assert await store.for_studio(db_session, 2) is special
    assert await store.for_studio(db_session, 3) == StudioPolicy()

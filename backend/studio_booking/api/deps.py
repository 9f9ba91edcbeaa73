"""
Dependency wiring for the engine's external collaborators.

Tests override get_booking_context with fakes; production builds one
context per request from process-wide singletons.
"""

from functools import lru_cache
from typing import Optional

from fastapi import Header

from studio_booking.core.config import get_settings
from studio_booking.core.policy import StudioPolicy
from studio_booking.infrastructure.notifier import LogNotifier, RedisStreamNotifier
from studio_booking.infrastructure.payment_client import HttpPaymentAuthority
from studio_booking.infrastructure.redis_client import get_redis
from studio_booking.services.context import BookingContext, build_booking_context
from studio_booking.services.interfaces.notifier import Notifier
from studio_booking.services.policy_service import DatabasePolicyStore


@lru_cache()
def get_payment_authority() -> HttpPaymentAuthority:
    return HttpPaymentAuthority()


@lru_cache()
def get_notifier() -> Notifier:
    if get_settings().REDIS_ENABLED:
        return RedisStreamNotifier(get_redis)
    return LogNotifier()


@lru_cache()
def get_policy_store() -> DatabasePolicyStore:
    return DatabasePolicyStore(StudioPolicy.from_settings(get_settings()))


def build_default_context() -> BookingContext:
    return build_booking_context(
        notifier=get_notifier(),
        payments=get_payment_authority(),
        policies=get_policy_store(),
    )


def get_booking_context() -> BookingContext:
    return build_default_context()


def get_idempotency_key(idempotency_key: Optional[str] = Header(None, max_length=128)) -> Optional[str]:
    """Client-supplied `Idempotency-Key` header."""
    return idempotency_key

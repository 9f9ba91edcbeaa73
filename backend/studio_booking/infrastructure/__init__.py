"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .notifier import LogNotifier, RedisStreamNotifier
from .payment_client import HttpPaymentAuthority
from .redis_client import close_redis, get_redis, redis_status

__all__ = [
    'LogNotifier', 'RedisStreamNotifier', 'HttpPaymentAuthority',
    'close_redis', 'get_redis', 'redis_status',
]

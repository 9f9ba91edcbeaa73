"""
Redis connection for the notification stream.

Notifications are appended to a Redis stream that the delivery service
(push/email) consumes. Redis is optional: when it is disabled or down the
notifier logs instead, and the engine keeps working.
"""

from typing import Optional

import redis.asyncio as redis
from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create the shared connection. Returns None if Redis is disabled or unreachable."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        try:
            await client.ping()
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error("redis_connection_failed", url=settings.REDIS_URL, error=str(e))
            await client.aclose()
            return None
        _redis_client = client
        logger.info("redis_connected", url=settings.REDIS_URL)

    return _redis_client


async def close_redis() -> None:
    """Close the connection on shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


async def redis_status() -> dict:
    """Connection state for the health endpoint."""
    client = await get_redis()
    if client is None:
        return {"status": "disabled" if not settings.REDIS_ENABLED else "unavailable"}
    try:
        length = await client.xlen(settings.NOTIFICATION_STREAM)
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}
    return {"status": "connected", "notification_stream_length": length}

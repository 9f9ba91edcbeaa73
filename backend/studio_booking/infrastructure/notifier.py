"""
Notifier implementations.
"""

import json
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger
from studio_booking.services.interfaces.notifier import Notification, Notifier

logger = get_logger(__name__)


class LogNotifier(Notifier):
    """Writes the notification as a log line. Used when Redis is disabled."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "notification",
            kind=notification.kind.value,
            member_id=notification.member_id,
            class_instance_id=notification.class_instance_id,
            reservation_id=notification.reservation_id,
            **notification.data,
        )


class RedisStreamNotifier(Notifier):
    """
    Appends notifications to a capped Redis stream (XADD ... MAXLEN ~ n).

    Raises when Redis is unreachable so the caller can count the failure
    and, for promotions, leave it for the sweep to retry.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[Optional[redis.Redis]]],
        stream: Optional[str] = None,
        maxlen: Optional[int] = None,
    ):
        settings = get_settings()
        self.connect = connect
        self.stream = stream or settings.NOTIFICATION_STREAM
        self.maxlen = maxlen or settings.NOTIFICATION_STREAM_MAXLEN

    async def send(self, notification: Notification) -> None:
        client = await self.connect()
        if client is None:
            raise ConnectionError("Redis is not available for notifications")

        fields = {
            "kind": notification.kind.value,
            "member_id": str(notification.member_id),
            "class_instance_id": str(notification.class_instance_id),
            "reservation_id": str(notification.reservation_id),
            "data": json.dumps(notification.data, default=str),
        }
        message_id = await client.xadd(self.stream, fields, maxlen=self.maxlen, approximate=True)
        logger.debug("notification_queued", stream=self.stream, message_id=message_id, kind=fields["kind"])

"""
Notifier interface.
Delivery is fire-and-forget from the engine's point of view: it is only
ever called after the state change has been committed.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class NotificationKind(str, enum.Enum):
    BOOKED = "booking_confirmed"
    WAITLISTED = "waitlisted"
    PROMOTED = "waitlist_promoted"
    PROMOTION_EXPIRED = "promotion_expired"
    CANCELLED = "booking_cancelled"
    CLASS_CANCELLED = "class_cancelled"
    NO_SHOW = "no_show"
    CONFIRMATION_REMINDER = "confirmation_reminder"
    CLASS_COMPLETED = "class_completed"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    member_id: int
    class_instance_id: int
    reservation_id: int
    data: dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    """
    Interface for the external notifier.

    Implementations:
    - RedisStreamNotifier: appends to a Redis stream read by the delivery service
    - LogNotifier: structured log line only (development, Redis disabled)
    """

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        pass

"""
One pass of the time-triggered maintenance work:

  1. expire lapsed promotions (and promote the next in line)
  2. re-send promotion notices that failed to deliver
  3. remind booked members whose confirmation window has opened
  4. close out classes whose end time has passed (no-shows, completed)

Each class is handled in its own transaction. A class that fails is
logged, counted and picked up again by the next sweep.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.logging import get_logger
from studio_booking.db.base import utcnow
from studio_booking.services.attendance_service import sweep_completed_classes
from studio_booking.services.context import BookingContext
from studio_booking.services.promotion_service import expire_due_promotions, retry_promotion_notifications
from studio_booking.services.reservation_service import send_confirmation_reminders

logger = get_logger(__name__)


@dataclass
class SweepReport:
    ran_at: datetime
    promotions_expired: int = 0
    requeued: int = 0
    promoted: int = 0
    notifications_retried: int = 0
    reminders_sent: int = 0
    classes_completed: int = 0
    no_shows: int = 0


async def run_sweep(db: AsyncSession, ctx: BookingContext, now: Optional[datetime] = None) -> SweepReport:
    now = now or utcnow()
    report = SweepReport(ran_at=now)

    expiry = await expire_due_promotions(db, ctx, now)
    report.promotions_expired = expiry.expired
    report.requeued = expiry.requeued
    report.promoted = expiry.promoted

    report.notifications_retried = await retry_promotion_notifications(db, ctx, now)
    report.reminders_sent = await send_confirmation_reminders(db, ctx, now)

    completions = await sweep_completed_classes(db, ctx, now)
    report.classes_completed = len(completions)
    report.no_shows = sum(c.no_shows for c in completions)

    logger.info(
        "sweep_completed",
        promotions_expired=report.promotions_expired,
        promoted=report.promoted,
        notifications_retried=report.notifications_retried,
        reminders_sent=report.reminders_sent,
        classes_completed=report.classes_completed,
        no_shows=report.no_shows,
    )
    return report

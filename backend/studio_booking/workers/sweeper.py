"""
Background sweeper: runs the maintenance pass on a fixed interval inside
the API process (started and stopped by the FastAPI lifespan).

Several API replicas may each run a sweeper. That is safe: every state
change goes through the same versioned writes as requests do, so two
sweepers racing on one class just retry or find nothing left to do.
"""

import asyncio
import uuid
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import sweep_runs
from studio_booking.services.context import BookingContext
from studio_booking.services.sweep_service import SweepReport, run_sweep

logger = get_logger(__name__)


class Sweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        context_factory: Callable[[], BookingContext],
        interval_seconds: float,
    ):
        self.session_factory = session_factory
        self.context_factory = context_factory
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="studio-booking-sweeper")
            logger.info("sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("sweeper_stopped")

    async def run_once(self) -> Optional[SweepReport]:
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(sweep_id=str(uuid.uuid4())[:8])
        try:
            async with self.session_factory() as db:
                report = await run_sweep(db, self.context_factory())
        except Exception as e:
            sweep_runs.labels(result="error").inc()
            logger.exception("sweep_failed", error=str(e))
            return None
        sweep_runs.labels(result="ok").inc()
        return report

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

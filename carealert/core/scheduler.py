"""
CareAlert — Reminder Scheduler.

One explicit, owned timer that runs the reminder due-check every poll
interval. There is exactly one per process; start() and stop() bound its
lifetime, and tick() can be called directly with a virtual clock in tests.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from carealert.core.clock import Clock, utc_now

if TYPE_CHECKING:
    from carealert.core.reminder_engine import ReminderEngine

logger = logging.getLogger(__name__)

DUE_CHECK_JOB_ID = "reminder_due_check"


class Scheduler:
    """Interval-driven owner of the reminder due-check."""

    def __init__(self, engine: ReminderEngine, clock: Clock = utc_now) -> None:
        self._engine = engine
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def interval_seconds(self) -> float:
        return self._engine.poll_interval.total_seconds()

    def start(self) -> None:
        """Register the due-check job. Must be called from a running event loop."""
        if self.running:
            logger.warning("Reminder scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.interval_seconds,
            id=DUE_CHECK_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Reminder scheduler started (every %ds)", self.interval_seconds)

    async def stop(self) -> None:
        """Stop the timer and wait for out-of-band reminder SMS to finish."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Reminder scheduler stopped")
        self._scheduler = None
        await self._engine.drain()

    async def tick(self) -> int:
        """Run one due-check at the clock's current time. Never raises."""
        now = self._clock()
        try:
            fired = await self._engine.due_check(now)
        except Exception as exc:
            logger.error("Reminder due-check failed at %s: %s", now.isoformat(), exc)
            return 0
        return len(fired)

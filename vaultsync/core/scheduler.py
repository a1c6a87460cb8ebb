from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "periodic_sync"


class SyncScheduler:
    """Runs a sync callback every N minutes on the asyncio loop."""

    def __init__(self, run_sync: Callable[[], Awaitable[Any]]) -> None:
        self._run_sync = run_sync
        self.scheduler = AsyncIOScheduler()
        self._interval_minutes = 0

    @property
    def interval_minutes(self) -> int:
        return self._interval_minutes

    def schedule(self, frequency_minutes: int) -> None:
        """Replace the periodic job. ``0`` disables periodic syncing."""
        if frequency_minutes < 0:
            raise ValueError("Frequency must not be negative")
        if self.scheduler.get_job(SYNC_JOB_ID):
            self.scheduler.remove_job(SYNC_JOB_ID)
        self._interval_minutes = frequency_minutes
        if frequency_minutes == 0:
            logger.info("Periodic sync disabled")
            return
        self.scheduler.add_job(
            self._run_sync,
            trigger=IntervalTrigger(minutes=frequency_minutes),
            id=SYNC_JOB_ID,
            name=SYNC_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(f"Periodic sync every {frequency_minutes} minutes")

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def trigger_now(self) -> Any:
        """Run the sync callback immediately, outside the schedule."""
        return await self._run_sync()

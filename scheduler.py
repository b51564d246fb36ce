"""Background timers: the lifecycle tick and the stale-reservation sweep."""

import asyncio
import logging
from typing import List, Optional

from config import settings
from database import SessionLocal
from lifecycle import run_lifecycle_tick
from reservations import ReservationCoordinator

logger = logging.getLogger(__name__)


async def lifecycle_loop(session_factory=SessionLocal, interval: Optional[int] = None):
    interval = interval or settings.LIFECYCLE_INTERVAL_SECONDS
    while True:
        try:
            await asyncio.to_thread(run_lifecycle_tick, session_factory)
        except Exception:
            logger.exception("Lifecycle tick failed")
        await asyncio.sleep(interval)


async def cleanup_loop(coordinator: ReservationCoordinator, session_factory=SessionLocal, interval: Optional[int] = None):
    interval = interval or settings.CLEANUP_INTERVAL_SECONDS
    while True:
        try:
            expired = await asyncio.to_thread(coordinator.expire_stale, session_factory)
            if expired:
                logger.info("Released %s expired reservation(s)", expired)
        except Exception:
            logger.exception("Reservation cleanup failed")
        await asyncio.sleep(interval)


class Scheduler:
    """Owns the two independent timer tasks for the life of the app."""

    def __init__(self, coordinator: ReservationCoordinator, session_factory=SessionLocal):
        self.coordinator = coordinator
        self.session_factory = session_factory
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self, lifecycle_interval: Optional[int] = None, cleanup_interval: Optional[int] = None) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(lifecycle_loop(self.session_factory, lifecycle_interval), name="flight-lifecycle"),
            asyncio.create_task(
                cleanup_loop(self.coordinator, self.session_factory, cleanup_interval), name="reservation-cleanup"
            ),
        ]
        logger.info("Scheduler started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")

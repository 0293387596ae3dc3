"""Periodic sweeps: scheduled notifications, batches and digests."""

import asyncio
from collections.abc import Awaitable, Callable

from notiflow.core.config import get_settings
from notiflow.core.logging import get_logger
from notiflow.notification.orchestrator import NotificationOrchestrator

logger = get_logger(__name__)


class SweepWorker:
    """Runs each orchestrator sweep on its own interval until stopped."""

    def __init__(self, orchestrator: NotificationOrchestrator):
        self._orchestrator = orchestrator
        self._settings = get_settings()
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        logger.info("Sweep worker started")
        await asyncio.gather(
            self._loop(
                "schedules",
                self._orchestrator.process_scheduled_notifications,
                self._settings.schedule_interval_seconds,
            ),
            self._loop(
                "batches",
                self._orchestrator.schedule_batch_processing,
                self._settings.batch_interval_seconds,
            ),
            self._loop(
                "digests",
                self._orchestrator.process_digests,
                self._settings.digest_interval_seconds,
            ),
        )
        logger.info("Sweep worker stopped")

    async def _loop(self, name: str, sweep: Callable[[], Awaitable[object]], interval: int) -> None:
        while not self._stop_event.is_set():
            try:
                await sweep()
            except Exception as e:
                logger.error("Sweep error", sweep=name, error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal worker to stop."""
        self._stop_event.set()

    async def close(self) -> None:
        await self._orchestrator.close()

"""Worker process entry point for event consumption and periodic sweeps."""

import asyncio
import signal

from notiflow.core.config import get_settings
from notiflow.core.logging import get_logger, setup_logging
from notiflow.messaging.consumer import RabbitMQConsumer
from notiflow.messaging.handler import EventHandler
from notiflow.notification.channels.base import channels_by_type
from notiflow.notification.channels.email import EmailChannel
from notiflow.notification.channels.push import PushChannel
from notiflow.notification.orchestrator import create_orchestrator
from notiflow.notification.worker import SweepWorker
from notiflow.storage.auxiliary import IdempotencyStore
from notiflow.storage.redis_client import (
    close_redis_pool,
    get_redis,
    init_redis_pool,
)

logger = get_logger(__name__)


class WorkerManager:
    """Manager for coordinating worker processes."""

    def __init__(self):
        self._settings = get_settings()
        self._consumer: RabbitMQConsumer | None = None
        self._sweep_worker: SweepWorker | None = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the consumer and the sweeps."""
        setup_logging()
        logger.info("Starting worker manager")

        await init_redis_pool()
        redis = get_redis()

        orchestrator = create_orchestrator(
            redis,
            channels=channels_by_type(EmailChannel(self._settings), PushChannel(settings=self._settings)),
            settings=self._settings,
        )
        handler = EventHandler(orchestrator, IdempotencyStore(redis))
        self._consumer = RabbitMQConsumer(handler.handle_event)
        self._sweep_worker = SweepWorker(orchestrator)

        try:
            await asyncio.gather(
                self._run_consumer(),
                self._run_sweep_worker(),
            )
        finally:
            await self._cleanup()

    async def _run_consumer(self) -> None:
        if self._consumer:
            try:
                await self._consumer.start_consuming()
            except asyncio.CancelledError:
                logger.info("Consumer cancelled")
            except Exception as e:
                logger.error("Consumer error", error=str(e), exc_info=True)

    async def _run_sweep_worker(self) -> None:
        if self._sweep_worker:
            try:
                await self._sweep_worker.start()
            except asyncio.CancelledError:
                logger.info("Sweep worker cancelled")
            except Exception as e:
                logger.error("Sweep worker error", error=str(e), exc_info=True)

    async def stop(self) -> None:
        """Signal workers to stop."""
        logger.info("Stopping workers")
        if self._consumer:
            self._consumer.stop()
        if self._sweep_worker:
            self._sweep_worker.stop()
        self._shutdown_event.set()

    async def _cleanup(self) -> None:
        logger.info("Cleaning up resources")
        if self._consumer:
            await self._consumer.disconnect()
        if self._sweep_worker:
            await self._sweep_worker.close()
        await close_redis_pool()
        logger.info("Cleanup complete")


async def main() -> None:
    """Main entry point for worker process."""
    manager = WorkerManager()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(manager.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await manager.start()


if __name__ == "__main__":
    asyncio.run(main())

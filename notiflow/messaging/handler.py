"""Domain event handler."""

import time

from notiflow.core.logging import get_logger
from notiflow.models.event import NotificationEvent
from notiflow.notification.orchestrator import NotificationOrchestrator
from notiflow.storage.auxiliary import IdempotencyStore

logger = get_logger(__name__)


class EventHandler:
    """Delivers each consumed event once."""

    def __init__(self, orchestrator: NotificationOrchestrator, idempotency: IdempotencyStore | None = None):
        self._orchestrator = orchestrator
        self._idempotency = idempotency or IdempotencyStore()

    async def handle_event(self, event: NotificationEvent) -> None:
        """Deliver an event unless it was already handled.

        Args:
            event: Event to deliver
        """
        if not await self._idempotency.mark_processed(event.event_id):
            logger.debug("Event already processed", event_id=event.event_id)
            return

        start_time = time.time()
        notifications = await self._orchestrator.deliver(event)
        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Event handled",
            event_id=event.event_id,
            event_type=event.event_type,
            notifications=len(notifications),
            elapsed_ms=elapsed_ms,
        )

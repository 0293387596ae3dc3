"""RabbitMQ domain-event consumer."""

import json
from typing import Any, Callable, Coroutine

import aio_pika
from aio_pika import IncomingMessage
from aio_pika.abc import AbstractRobustConnection
from pydantic import ValidationError

from notiflow.core.config import get_settings
from notiflow.core.logging import get_logger
from notiflow.models.event import EVENT_KINDS, NotificationEvent

logger = get_logger(__name__)

# Type alias for message handler
MessageHandler = Callable[[NotificationEvent], Coroutine[Any, Any, None]]


def parse_event(body: dict[str, Any], message_id: str | None = None) -> NotificationEvent:
    """Build an event from a queue message body.

    ``data.kind`` defaults to the event type's prefix (``task.assigned`` ->
    ``task``), or ``custom`` for types without a built-in payload shape.

    Raises:
        ValidationError: If the body does not describe a valid event
    """
    body = dict(body)
    data = dict(body.get("data") or {})
    if "kind" not in data:
        prefix = str(body.get("event_type", "")).split(".", 1)[0]
        data["kind"] = prefix if prefix in EVENT_KINDS else "custom"
    if data["kind"] == "custom" and "variables" not in data:
        data = {
            "kind": "custom",
            "actor": data.pop("actor", None),
            "variables": {k: v for k, v in data.items() if k != "kind"},
        }
    body["data"] = data
    if not body.get("event_id") and message_id:
        body["event_id"] = message_id
    return NotificationEvent.model_validate(body)


class RabbitMQConsumer:
    """RabbitMQ consumer feeding domain events to a handler."""

    def __init__(self, handler: MessageHandler):
        """Initialize consumer.

        Args:
            handler: Async function to handle incoming events
        """
        self._settings = get_settings()
        self._handler = handler
        self._connection: AbstractRobustConnection | None = None
        self._should_stop = False

    async def connect(self) -> None:
        self._connection = await aio_pika.connect_robust(
            self._settings.rabbitmq_url,
            reconnect_interval=5,
        )
        logger.info("Connected to RabbitMQ")

    async def disconnect(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Disconnected from RabbitMQ")

    async def start_consuming(self) -> None:
        """Consume messages until ``stop`` is called."""
        if not self._connection:
            await self.connect()

        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=10)

        queue = await channel.declare_queue(
            self._settings.rabbitmq_queue,
            durable=True,
        )

        logger.info("Starting message consumption", queue=self._settings.rabbitmq_queue)

        async with queue.iterator() as queue_iter:
            async for message in queue_iter:
                if self._should_stop:
                    break
                await self._process_message(message)

    async def _process_message(self, message: IncomingMessage) -> None:
        """Parse and handle one message; malformed messages are acked and dropped."""
        async with message.process():
            try:
                body = json.loads(message.body.decode())
                if "event_type" not in body:
                    logger.warning("Message missing event_type", message_id=message.message_id)
                    return

                event = parse_event(body, message.message_id)
                logger.debug("Processing event", event_id=event.event_id, event_type=event.event_type)
                await self._handler(event)

            except json.JSONDecodeError as e:
                logger.error("Invalid JSON message", error=str(e))
            except ValidationError as e:
                logger.error("Invalid event message", message_id=message.message_id, errors=e.errors())
            except Exception as e:
                logger.error("Error processing message", error=str(e), exc_info=True)

    def stop(self) -> None:
        self._should_stop = True
        logger.info("Consumer stop requested")

"""RabbitMQ message consumer."""

import json
from typing import Any, Callable, Coroutine

import aio_pika
from aio_pika import IncomingMessage
from aio_pika.abc import AbstractRobustConnection
from pydantic import ValidationError as PydanticValidationError

from mailflow.core.config import get_settings
from mailflow.core.logging import get_logger
from mailflow.models.event import Event

logger = get_logger(__name__)

# Type alias for message handler
MessageHandler = Callable[[Event], Coroutine[Any, Any, None]]


def parse_event(body: bytes, message_id: str | None = None) -> Event:
    """Decode a message body into an Event.

    The AMQP message id is used when the body carries no ``event_id``.

    Raises:
        json.JSONDecodeError: If the body is not JSON
        pydantic.ValidationError: If required fields are missing or invalid
    """
    payload = json.loads(body.decode())
    if not isinstance(payload, dict):
        raise ValueError("Event payload must be a JSON object")
    if not payload.get("event_id") and message_id:
        payload["event_id"] = message_id
    return Event.model_validate(payload)


class RabbitMQConsumer:
    """RabbitMQ consumer feeding trigger events to a handler."""

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
        """Connect to RabbitMQ."""
        self._connection = await aio_pika.connect_robust(
            self._settings.rabbitmq_url,
            reconnect_interval=5,
        )
        logger.info("Connected to RabbitMQ")

    async def disconnect(self) -> None:
        """Disconnect from RabbitMQ."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Disconnected from RabbitMQ")

    async def start_consuming(self) -> None:
        """Start consuming messages from the event queue."""
        if not self._connection:
            await self.connect()

        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=self._settings.worker_concurrency)

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
        """Process a single message.

        Malformed messages are logged and acknowledged; they would never
        succeed on redelivery. A handler failure requeues the message once,
        a second failure of the redelivered message drops it.
        """
        async with message.process(ignore_processed=True):
            try:
                event = parse_event(message.body, message.message_id)
            except (ValueError, PydanticValidationError) as e:
                logger.warning("Invalid event message", message_id=message.message_id, error=str(e))
                return

            try:
                await self._handler(event)
            except Exception as e:
                requeue = not message.redelivered
                logger.error(
                    "Error processing event",
                    event_id=event.event_id,
                    requeue=requeue,
                    error=str(e),
                    exc_info=True,
                )
                await message.reject(requeue=requeue)

    def stop(self) -> None:
        """Signal consumer to stop."""
        self._should_stop = True
        logger.info("Consumer stop requested")

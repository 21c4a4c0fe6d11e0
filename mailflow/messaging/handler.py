"""Event processing handler."""

import time

from mailflow.core.logging import get_logger
from mailflow.engine.coordinator import ExecutionCoordinator
from mailflow.models.event import Event
from mailflow.observability.metrics import EVENTS_PROCESSED, EVENTS_RECEIVED
from mailflow.observability.tracing import TraceContext
from mailflow.storage.auxiliary import IdempotencyStore

logger = get_logger(__name__)


class EventHandler:
    """Runs inbound events through idempotency and the execution coordinator."""

    def __init__(self, coordinator: ExecutionCoordinator, idempotency: IdempotencyStore):
        self._coordinator = coordinator
        self._idempotency = idempotency

    async def handle_event(self, event: Event) -> None:
        """Process an incoming event.

        Pipeline steps:
        1. Skip event ids already processed
        2. Start executions for matching automations
        3. Remember the event id

        The id is remembered only after processing succeeds so a redelivered
        event is retried. Automations the first attempt already started are
        remembered per event by the coordinator and skipped on the retry.

        Args:
            event: Event to process
        """
        EVENTS_RECEIVED.labels(trigger_type=event.trigger_type.value).inc()
        start_time = time.time()

        with TraceContext(event_id=event.event_id, tenant_id=event.tenant_id):
            logger.info(
                "Processing event",
                trigger_type=event.trigger_type.value,
                subscriber_id=event.subscriber_id,
            )

            if await self._idempotency.is_processed(event.event_id):
                EVENTS_PROCESSED.labels(trigger_type=event.trigger_type.value, status="duplicate").inc()
                logger.debug("Event already processed")
                return

            try:
                executions = await self._coordinator.process_event(event)
            except Exception:
                EVENTS_PROCESSED.labels(trigger_type=event.trigger_type.value, status="error").inc()
                raise

            await self._idempotency.mark_processed(event.event_id)
            EVENTS_PROCESSED.labels(trigger_type=event.trigger_type.value, status="processed").inc()

            logger.info(
                "Event processing complete",
                executions_started=len(executions),
                elapsed_ms=int((time.time() - start_time) * 1000),
            )

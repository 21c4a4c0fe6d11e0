"""Worker process entry point: event consumption plus the scheduler tick."""

import asyncio
import signal

from mailflow.core.config import get_settings
from mailflow.core.logging import get_logger, setup_logging
from mailflow.delivery.base import DeliveryChannel
from mailflow.messaging.consumer import RabbitMQConsumer
from mailflow.messaging.handler import EventHandler
from mailflow.scheduler import Scheduler
from mailflow.services import (
    build_campaign_dispatcher,
    build_coordinator,
    build_delivery_channel,
)
from mailflow.storage.auxiliary import IdempotencyStore
from mailflow.storage.redis_client import (
    close_redis_pool,
    get_redis,
    init_redis_pool,
)

logger = get_logger(__name__)


class WorkerManager:
    """Manager for coordinating worker processes."""

    def __init__(self):
        """Initialize worker manager."""
        self._settings = get_settings()
        self._consumer: RabbitMQConsumer | None = None
        self._scheduler: Scheduler | None = None
        self._delivery: DeliveryChannel | None = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start consumer and scheduler."""
        setup_logging("worker")
        logger.info("Starting worker manager")

        await init_redis_pool()
        redis = get_redis()

        self._delivery = build_delivery_channel(self._settings)
        if self._delivery is None:
            logger.warning("No delivery channel; send_email steps will fail and A/B continuations are paused")
        else:
            logger.info("Delivery channel ready", channel=self._delivery.channel_type)

        coordinator = build_coordinator(redis, self._delivery)
        dispatcher = build_campaign_dispatcher(redis, self._delivery) if self._delivery else None

        handler = EventHandler(coordinator, IdempotencyStore(redis))
        self._consumer = RabbitMQConsumer(handler.handle_event)
        self._scheduler = Scheduler(coordinator, dispatcher)

        try:
            await asyncio.gather(
                self._run_consumer(),
                self._run_scheduler(),
            )
        finally:
            await self._cleanup()

    async def _run_consumer(self) -> None:
        """Run message consumer."""
        if self._consumer:
            try:
                await self._consumer.start_consuming()
            except asyncio.CancelledError:
                logger.info("Consumer cancelled")
            except Exception as e:
                logger.error("Consumer error", error=str(e), exc_info=True)

    async def _run_scheduler(self) -> None:
        """Run scheduler tick loop."""
        if self._scheduler:
            try:
                await self._scheduler.start()
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled")

    async def stop(self) -> None:
        """Signal workers to stop."""
        logger.info("Stopping workers")
        if self._consumer:
            self._consumer.stop()
            await self._consumer.disconnect()
        if self._scheduler:
            self._scheduler.stop()
        self._shutdown_event.set()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        logger.info("Cleaning up resources")
        if self._consumer:
            await self._consumer.disconnect()
        if self._delivery:
            await self._delivery.close()
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


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

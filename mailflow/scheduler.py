"""Periodic tick resuming due executions and due A/B continuations."""

import asyncio
from dataclasses import dataclass
from datetime import datetime

from mailflow.campaigns.dispatcher import CampaignDispatcher
from mailflow.core.config import get_settings
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import Clock, utcnow
from mailflow.engine.coordinator import ExecutionCoordinator
from mailflow.observability.metrics import TICK_DURATION

logger = get_logger(__name__)


@dataclass
class TickResult:
    """What one tick did."""

    executions_resumed: int = 0
    continuations_sent: int = 0


class Scheduler:
    """Poll-based tick loop."""

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        dispatcher: CampaignDispatcher | None = None,
        interval_seconds: float | None = None,
        clock: Clock = utcnow,
    ):
        """Initialize scheduler.

        Args:
            coordinator: Execution coordinator
            dispatcher: Campaign dispatcher; continuations are skipped without one
            interval_seconds: Seconds between ticks
            clock: Source of the current time
        """
        self._coordinator = coordinator
        self._dispatcher = dispatcher
        self._interval = interval_seconds or get_settings().tick_interval_seconds
        self._clock = clock
        self._stop_event = asyncio.Event()

    async def tick(self, now: datetime | None = None) -> TickResult:
        """Run one tick at ``now``."""
        now = now or self._clock()
        result = TickResult()

        with TICK_DURATION.time():
            result.executions_resumed = await self._coordinator.resume_due(now)
            if self._dispatcher is not None:
                result.continuations_sent = await self._dispatcher.run_due_continuations(now)

        if result.executions_resumed or result.continuations_sent:
            logger.info(
                "Tick complete",
                executions_resumed=result.executions_resumed,
                continuations_sent=result.continuations_sent,
            )
        return result

    async def start(self) -> None:
        """Tick until stopped."""
        logger.info("Scheduler started", interval_seconds=self._interval)

        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("Tick error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Signal scheduler to stop."""
        self._stop_event.set()

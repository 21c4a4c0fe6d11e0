"""Execution coordinator: starts, advances, suspends, resumes and ends executions.

The only suspension point is a persisted ``next_action_at``. Nothing is held
in process memory between ticks, so any worker can resume any execution
after claiming it.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any

from mailflow.core.config import get_settings
from mailflow.core.errors import ClaimConflictError, MailflowError, NotFoundError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import Clock, utcnow
from mailflow.engine.actions import ActionContext, ActionExecutor, ActionResult
from mailflow.engine.triggers import TriggerEvaluator
from mailflow.models.automation import Automation, StepKind
from mailflow.models.event import Event, TriggerContext
from mailflow.models.execution import AutomationStats, Execution, ExecutionStatus, StepLogEntry
from mailflow.observability.metrics import (
    CLAIM_CONFLICTS,
    DUE_RECORDS,
    EXECUTIONS_FINISHED,
    EXECUTIONS_STARTED,
    EXECUTIONS_SUSPENDED,
    STEPS_EXECUTED,
)
from mailflow.observability.tracing import TraceContext
from mailflow.storage.automation_store import AutomationStore
from mailflow.storage.auxiliary import IdempotencyStore
from mailflow.storage.execution_store import ExecutionStore

logger = get_logger(__name__)


def generate_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex}"


class ExecutionCoordinator:
    """Drives executions through their automation's actions."""

    def __init__(
        self,
        automations: AutomationStore,
        executions: ExecutionStore,
        actions: ActionExecutor,
        triggers: TriggerEvaluator | None = None,
        clock: Clock = utcnow,
        worker_concurrency: int | None = None,
        resume_batch_size: int | None = None,
        batch_pause_seconds: float | None = None,
        idempotency: IdempotencyStore | None = None,
    ):
        """Initialize coordinator.

        Args:
            automations: Automation repository
            executions: Execution repository
            actions: Action executor
            triggers: Trigger evaluator, defaults to the built-in table
            clock: Source of the current time
            worker_concurrency: Executions resumed concurrently per chunk
            resume_batch_size: Maximum due executions collected per tick
            batch_pause_seconds: Pause between chunks
            idempotency: Remembers which automations an event already started
        """
        settings = get_settings()
        self._automations = automations
        self._executions = executions
        self._actions = actions
        self._triggers = triggers or TriggerEvaluator()
        self._clock = clock
        self._concurrency = worker_concurrency or settings.worker_concurrency
        self._batch_size = resume_batch_size or settings.resume_batch_size
        self._pause = settings.batch_pause_seconds if batch_pause_seconds is None else batch_pause_seconds
        self._idempotency = idempotency

    async def process_event(self, event: Event) -> list[Execution]:
        """Start executions for every automation whose trigger matches an event.

        An automation this event already started (before a failure made the
        event come back) is skipped, so its side effects do not run twice.
        Errors other than domain errors propagate and leave the remaining
        automations for the redelivery.

        Args:
            event: Inbound trigger event

        Returns:
            Executions started (in their state after the synchronous run)
        """
        automations = await self._automations.list_by_trigger(event.tenant_id, event.trigger_type)
        if not automations:
            logger.debug("No automations for trigger", tenant_id=event.tenant_id, trigger_type=event.trigger_type.value)
            return []

        context = TriggerContext.from_event(event)
        started = []
        for automation in automations:
            if not self._triggers.evaluate(automation.trigger.type, context, automation.trigger.conditions):
                continue

            if not event.subscriber_id:
                logger.warning(
                    "Matched trigger without subscriber",
                    automation_id=automation.automation_id,
                    event_id=event.event_id,
                )
                continue

            if self._idempotency and await self._idempotency.is_started(event.event_id, automation.automation_id):
                logger.info(
                    "Automation already started by event",
                    automation_id=automation.automation_id,
                    event_id=event.event_id,
                )
                continue

            try:
                execution = await self.start(automation, event.subscriber_id, event.data)
            except MailflowError as e:
                logger.error(
                    "Error starting execution",
                    automation_id=automation.automation_id,
                    event_id=event.event_id,
                    error=str(e),
                )
                continue

            if self._idempotency:
                await self._idempotency.mark_started(event.event_id, automation.automation_id)

            if execution is not None:
                started.append(execution)
        return started

    async def start(
        self,
        automation: Automation,
        subscriber_id: str,
        trigger_data: dict[str, Any] | None = None,
    ) -> Execution | None:
        """Create an execution at step 0 and run it until it suspends or ends.

        Args:
            automation: Automation definition (current version)
            subscriber_id: Subscriber to run for
            trigger_data: Trigger payload snapshot

        Returns:
            The execution, or None if the pair already has an ACTIVE one
        """
        now = self._clock()
        execution = Execution(
            execution_id=generate_execution_id(),
            automation_id=automation.automation_id,
            automation_version=automation.version,
            tenant_id=automation.tenant_id,
            subscriber_id=subscriber_id,
            trigger_data=dict(trigger_data or {}),
            created_at=now,
            updated_at=now,
        )

        if not await self._executions.create_if_absent(execution):
            logger.info(
                "Execution already active",
                automation_id=automation.automation_id,
                subscriber_id=subscriber_id,
            )
            return None

        EXECUTIONS_STARTED.labels(trigger_type=automation.trigger.type.value).inc()
        logger.info(
            "Execution started",
            execution_id=execution.execution_id,
            automation_id=automation.automation_id,
            version=automation.version,
            subscriber_id=subscriber_id,
        )
        return await self._run(execution, automation)

    async def resume(self, execution_id: str) -> Execution:
        """Claim a due execution and continue it at its current step.

        The execution always continues against the automation version it
        started on.

        Raises:
            ClaimConflictError: If another worker claimed it first
        """
        execution = await self._executions.claim(execution_id)

        with TraceContext(execution_id=execution_id):
            automation = await self._automations.get_version(
                execution.automation_id,
                execution.automation_version,
            )
            if automation is None:
                return await self._finish(
                    execution,
                    ExecutionStatus.FAILED,
                    error=f"Automation {execution.automation_id} v{execution.automation_version} not found",
                    failed_step=execution.current_step,
                )

            logger.info("Execution resumed", step=execution.current_step)
            return await self._run(execution, automation)

    async def resume_due(self, now: datetime | None = None) -> int:
        """Resume every execution due at ``now``, chunk by chunk.

        Returns:
            Number of executions resumed by this worker
        """
        now = now or self._clock()
        execution_ids = await self._executions.due_ids(now, self._batch_size)
        DUE_RECORDS.labels(record="execution").set(len(execution_ids))
        if not execution_ids:
            return 0

        resumed = 0
        for offset in range(0, len(execution_ids), self._concurrency):
            chunk = execution_ids[offset:offset + self._concurrency]
            results = await asyncio.gather(*(self._resume_one(eid) for eid in chunk), return_exceptions=True)

            for execution_id, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    logger.error("Error resuming execution", execution_id=execution_id, error=str(result))
                elif result is not None:
                    resumed += 1

            if offset + self._concurrency < len(execution_ids) and self._pause:
                await asyncio.sleep(self._pause)

        logger.info("Resumed due executions", due=len(execution_ids), resumed=resumed)
        return resumed

    async def _resume_one(self, execution_id: str) -> Execution | None:
        try:
            return await self.resume(execution_id)
        except ClaimConflictError as e:
            CLAIM_CONFLICTS.labels(record="execution").inc()
            logger.info("Resume claim lost", execution_id=execution_id, error=str(e))
            return None

    async def cancel(self, execution_id: str, reason: str = "cancelled") -> bool:
        """Cancel an execution.

        Returns:
            True if cancelled, False if it had already ended

        Raises:
            NotFoundError: If the execution does not exist
        """
        execution = await self._executions.get(execution_id, include_log=False)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        if execution.status.is_terminal:
            return False

        finished = await self._finish(execution, ExecutionStatus.CANCELLED, cancel_reason=reason)
        return finished.status is ExecutionStatus.CANCELLED

    async def cancel_for_subscriber(self, tenant_id: str, subscriber_id: str, reason: str = "cancelled") -> int:
        """Cancel every ACTIVE execution of a subscriber (e.g. after unsubscribe).

        Returns:
            Number of executions cancelled
        """
        cancelled = 0
        for execution_id in await self._executions.active_ids_for_subscriber(tenant_id, subscriber_id):
            if await self.cancel(execution_id, reason):
                cancelled += 1
        return cancelled

    async def cancel_for_automation(self, automation_id: str, reason: str = "automation deleted") -> int:
        """Cancel every ACTIVE execution of an automation."""
        cancelled = 0
        for execution_id in await self._executions.active_ids_for_automation(automation_id):
            if await self.cancel(execution_id, reason):
                cancelled += 1
        return cancelled

    async def get_stats(self, automation_id: str) -> AutomationStats:
        return await self._executions.stats(automation_id)

    async def _run(self, execution: Execution, automation: Automation) -> Execution:
        """Step loop. Returns when the execution suspends or ends."""
        actions = automation.actions

        while execution.current_step < len(actions):
            stored = await self._executions.get_status(execution.execution_id)
            if stored is not None and stored.is_terminal:
                logger.info("Execution no longer active", execution_id=execution.execution_id, status=stored.value)
                execution.status = stored
                return execution

            step = execution.current_step
            action = actions[step]
            now = self._clock()
            context = ActionContext(
                tenant_id=execution.tenant_id,
                subscriber_id=execution.subscriber_id,
                automation_id=execution.automation_id,
                execution_id=execution.execution_id,
                trigger_data=execution.trigger_data,
                now=now,
            )

            try:
                result = await self._actions.execute(context, action)
            except Exception as e:
                # Failures of a step are recorded, never retried
                logger.error(
                    "Step raised",
                    execution_id=execution.execution_id,
                    step=step,
                    action_type=action.type,
                    error=str(e),
                    exc_info=True,
                )
                result = ActionResult.failure(str(e) or type(e).__name__)

            STEPS_EXECUTED.labels(action_kind=action.type, success=str(result.success).lower()).inc()
            entry = StepLogEntry(
                step=step,
                action_kind=action.type,
                success=result.success,
                error=result.error,
                data=result.data or None,
                timestamp=now,
            )

            if not result.success:
                return await self._finish(
                    execution,
                    ExecutionStatus.FAILED,
                    entry=entry,
                    error=result.error,
                    failed_step=step,
                )

            execution.current_step = step + 1

            if action.step_kind is StepKind.BRANCH and not result.condition_met:
                logger.info("Branch condition not met", execution_id=execution.execution_id, step=step)
                return await self._finish(execution, ExecutionStatus.COMPLETED, entry=entry)

            delay_minutes = result.next_delay_minutes
            if delay_minutes is None and action.delay is not None:
                delay_minutes = action.delay.to_minutes()

            if delay_minutes:
                execution.next_action_at = now + timedelta(minutes=delay_minutes)

            if not await self._executions.save(execution, entry):
                return await self._reload_terminal(execution)

            if execution.next_action_at is not None:
                EXECUTIONS_SUSPENDED.inc()
                logger.info(
                    "Execution suspended",
                    execution_id=execution.execution_id,
                    next_step=execution.current_step,
                    next_action_at=execution.next_action_at.isoformat(),
                )
                return execution

        return await self._finish(execution, ExecutionStatus.COMPLETED)

    async def _finish(
        self,
        execution: Execution,
        status: ExecutionStatus,
        entry: StepLogEntry | None = None,
        error: str | None = None,
        failed_step: int | None = None,
        cancel_reason: str | None = None,
    ) -> Execution:
        execution.status = status
        execution.error = error
        execution.failed_step = failed_step
        execution.cancel_reason = cancel_reason
        execution.next_action_at = None
        execution.finished_at = self._clock()

        if not await self._executions.save(execution, entry):
            return await self._reload_terminal(execution)

        EXECUTIONS_FINISHED.labels(status=status.value).inc()
        log = logger.warning if status is ExecutionStatus.FAILED else logger.info
        log(
            "Execution finished",
            execution_id=execution.execution_id,
            automation_id=execution.automation_id,
            status=status.value,
            error=error,
            failed_step=failed_step,
        )
        return execution

    async def _reload_terminal(self, execution: Execution) -> Execution:
        """Adopt the terminal state another writer stored first."""
        stored = await self._executions.get(execution.execution_id)
        logger.info(
            "Execution ended concurrently",
            execution_id=execution.execution_id,
            status=stored.status.value if stored else None,
        )
        return stored or execution

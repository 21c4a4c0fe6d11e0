"""Execution state storage operations.

Layout per execution:

- detail hash: ``state`` (execution JSON without the step log) and ``status``
- log list: one JSON ``StepLogEntry`` per executed step, append-only
- active key: guard holding the id of the single ACTIVE execution
  of an (automation, subscriber) pair
- due zset: ids of suspended executions scored by ``next_action_at`` millis
"""

from datetime import datetime

from redis.asyncio import Redis
from redis.exceptions import WatchError

from mailflow.core.errors import ClaimConflictError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import to_millis, utcnow
from mailflow.models.execution import (
    AutomationStats,
    Execution,
    ExecutionStatus,
    StepLogEntry,
)
from mailflow.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)

_STATE_EXCLUDE = {"step_log"}
_MAX_WATCH_RETRIES = 5


class ExecutionStore:
    """Execution storage using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def create_if_absent(self, execution: Execution) -> bool:
        """Create an execution unless the pair already has an ACTIVE one.

        The guard and the execution records are written in one transaction.
        A guard pointing at an execution with no stored detail is left over
        from an interrupted write and is replaced.

        Args:
            execution: New execution in ACTIVE status

        Returns:
            True if created, False if an active execution already exists

        Raises:
            ClaimConflictError: If the guard kept changing during creation
        """
        active_key = RedisKeys.execution_active(execution.automation_id, execution.subscriber_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(_MAX_WATCH_RETRIES):
                try:
                    await pipe.watch(active_key)
                    holder = await pipe.get(active_key)
                    if holder:
                        if await pipe.exists(RedisKeys.execution_detail(holder)):
                            await pipe.unwatch()
                            return False
                        logger.warning(
                            "Replacing stale active guard",
                            automation_id=execution.automation_id,
                            subscriber_id=execution.subscriber_id,
                            stale_execution_id=holder,
                        )

                    pipe.multi()
                    pipe.set(active_key, execution.execution_id)
                    pipe.hset(
                        RedisKeys.execution_detail(execution.execution_id),
                        mapping={
                            "state": execution.model_dump_json(exclude=_STATE_EXCLUDE),
                            "status": execution.status.value,
                        },
                    )
                    pipe.zadd(
                        RedisKeys.execution_by_automation(execution.automation_id),
                        {execution.execution_id: to_millis(execution.created_at)},
                    )
                    pipe.sadd(
                        RedisKeys.execution_by_subscriber(execution.tenant_id, execution.subscriber_id),
                        execution.execution_id,
                    )
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

        raise ClaimConflictError(f"Active guard for automation {execution.automation_id} kept changing")

    async def get(self, execution_id: str, include_log: bool = True) -> Execution | None:
        """Get an execution by ID.

        Args:
            execution_id: Execution ID
            include_log: Whether to load the step log

        Returns:
            Execution if found, None otherwise
        """
        data = await self.redis.hget(RedisKeys.execution_detail(execution_id), "state")
        if not data:
            return None

        execution = Execution.model_validate_json(data)
        if include_log:
            execution.step_log = await self.get_log(execution_id)
        return execution

    async def get_status(self, execution_id: str) -> ExecutionStatus | None:
        """Read only the stored status of an execution."""
        status = await self.redis.hget(RedisKeys.execution_detail(execution_id), "status")
        return ExecutionStatus(status) if status else None

    async def get_log(self, execution_id: str) -> list[StepLogEntry]:
        """Get the ordered step log of an execution."""
        entries = await self.redis.lrange(RedisKeys.execution_log(execution_id), 0, -1)
        return [StepLogEntry.model_validate_json(entry) for entry in entries]

    async def get_active(self, automation_id: str, subscriber_id: str) -> Execution | None:
        """Get the ACTIVE execution of an (automation, subscriber) pair, if any."""
        execution_id = await self.redis.get(RedisKeys.execution_active(automation_id, subscriber_id))
        if not execution_id:
            return None
        return await self.get(execution_id, include_log=False)

    async def save(self, execution: Execution, entry: StepLogEntry | None = None) -> bool:
        """Persist execution state and an optional step log entry atomically.

        A stored terminal status is never overwritten. The step entry is still
        appended in that case because the step did run.

        Args:
            execution: Execution state to persist
            entry: Step outcome to append to the log

        Returns:
            True if the state was written, False if a terminal status was
            already stored
        """
        execution.updated_at = utcnow()
        detail_key = RedisKeys.execution_detail(execution.execution_id)
        log_key = RedisKeys.execution_log(execution.execution_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(_MAX_WATCH_RETRIES):
                try:
                    await pipe.watch(detail_key)
                    stored = await pipe.hget(detail_key, "status")

                    if stored and ExecutionStatus(stored).is_terminal:
                        pipe.multi()
                        if entry is not None:
                            pipe.rpush(log_key, entry.model_dump_json())
                        await pipe.execute()
                        return False

                    pipe.multi()
                    pipe.hset(
                        detail_key,
                        mapping={
                            "state": execution.model_dump_json(exclude=_STATE_EXCLUDE),
                            "status": execution.status.value,
                        },
                    )
                    if entry is not None:
                        pipe.rpush(log_key, entry.model_dump_json())
                    self._index_status(pipe, execution)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug("Execution changed during save, retrying", execution_id=execution.execution_id)
                    continue

        raise ClaimConflictError(f"Execution {execution.execution_id} kept changing during save")

    def _index_status(self, pipe, execution: Execution) -> None:
        """Queue due-index and active-guard updates for the new state."""
        if execution.status.is_terminal:
            pipe.delete(RedisKeys.execution_active(execution.automation_id, execution.subscriber_id))
            pipe.zrem(RedisKeys.EXECUTION_DUE, execution.execution_id)
        elif execution.next_action_at is not None:
            pipe.zadd(RedisKeys.EXECUTION_DUE, {execution.execution_id: to_millis(execution.next_action_at)})
        else:
            pipe.zrem(RedisKeys.EXECUTION_DUE, execution.execution_id)

    async def due_ids(self, now: datetime, limit: int) -> list[str]:
        """Get ids of suspended executions whose resume time has passed.

        Args:
            now: Reference time
            limit: Maximum ids returned

        Returns:
            Due execution ids, earliest first
        """
        return await self.redis.zrangebyscore(
            RedisKeys.EXECUTION_DUE,
            "-inf",
            to_millis(now),
            start=0,
            num=limit,
        )

    async def claim(self, execution_id: str) -> Execution:
        """Claim a due execution for this worker.

        Claiming removes the id from the due index; only the worker whose
        removal succeeds may run the execution.

        Raises:
            ClaimConflictError: If another worker claimed it first
        """
        removed = await self.redis.zrem(RedisKeys.EXECUTION_DUE, execution_id)
        if not removed:
            raise ClaimConflictError(f"Execution {execution_id} already claimed")

        execution = await self.get(execution_id, include_log=False)
        if execution is None or execution.status.is_terminal:
            raise ClaimConflictError(f"Execution {execution_id} is no longer active")

        execution.next_action_at = None
        if not await self.save(execution):
            raise ClaimConflictError(f"Execution {execution_id} finished while being claimed")
        return execution

    async def list_by_automation(
        self,
        automation_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Execution]:
        """List executions of an automation, newest first (without step logs)."""
        execution_ids = await self.redis.zrevrange(
            RedisKeys.execution_by_automation(automation_id),
            offset,
            offset + limit - 1,
        )
        executions = []
        for execution_id in execution_ids:
            execution = await self.get(execution_id, include_log=False)
            if execution:
                executions.append(execution)
        return executions

    async def count_by_automation(self, automation_id: str) -> int:
        """Count executions ever created for an automation."""
        return await self.redis.zcard(RedisKeys.execution_by_automation(automation_id))

    async def active_ids_for_automation(self, automation_id: str) -> list[str]:
        """Ids of ACTIVE executions of an automation."""
        execution_ids = await self.redis.zrange(RedisKeys.execution_by_automation(automation_id), 0, -1)
        statuses = await self._statuses(execution_ids)
        return [
            execution_id
            for execution_id, status in zip(execution_ids, statuses)
            if status == ExecutionStatus.ACTIVE.value
        ]

    async def active_ids_for_subscriber(self, tenant_id: str, subscriber_id: str) -> list[str]:
        """Ids of ACTIVE executions of a subscriber across all automations."""
        execution_ids = sorted(
            await self.redis.smembers(RedisKeys.execution_by_subscriber(tenant_id, subscriber_id))
        )
        statuses = await self._statuses(execution_ids)
        return [
            execution_id
            for execution_id, status in zip(execution_ids, statuses)
            if status == ExecutionStatus.ACTIVE.value
        ]

    async def stats(self, automation_id: str) -> AutomationStats:
        """Count executions of an automation by status."""
        execution_ids = await self.redis.zrange(RedisKeys.execution_by_automation(automation_id), 0, -1)
        stats = AutomationStats(automation_id=automation_id)
        for status in await self._statuses(execution_ids):
            if status is None:
                continue
            stats.total += 1
            setattr(stats, status, getattr(stats, status) + 1)
        return stats

    async def _statuses(self, execution_ids: list[str]) -> list[str | None]:
        if not execution_ids:
            return []
        async with self.redis.pipeline(transaction=False) as pipe:
            for execution_id in execution_ids:
                pipe.hget(RedisKeys.execution_detail(execution_id), "status")
            return await pipe.execute()

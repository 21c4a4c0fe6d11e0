"""Automation definition storage operations."""

from redis.asyncio import Redis

from mailflow.core.timeutil import to_millis, utcnow
from mailflow.models.automation import Automation, TriggerKind
from mailflow.storage.redis_client import RedisKeys, get_redis


class AutomationStore:
    """Automation storage using Redis.

    Every version of a definition is kept in a per-automation hash so that
    running executions can resume against the version they started on.
    """

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def create(self, automation: Automation) -> Automation:
        """Create a new automation.

        Args:
            automation: Automation to create

        Returns:
            Created automation
        """
        await self._write(automation, previous_trigger=None)
        return automation

    async def get(self, automation_id: str) -> Automation | None:
        """Get the current version of an automation.

        Args:
            automation_id: Automation ID

        Returns:
            Automation if found, None otherwise
        """
        data = await self.redis.hget(RedisKeys.automation_detail(automation_id), "config")
        if not data:
            return None
        return Automation.model_validate_json(data)

    async def get_version(self, automation_id: str, version: int) -> Automation | None:
        """Get a specific stored version of an automation.

        Args:
            automation_id: Automation ID
            version: Definition version

        Returns:
            That version if it was stored, None otherwise
        """
        data = await self.redis.hget(RedisKeys.automation_versions(automation_id), str(version))
        if not data:
            return None
        return Automation.model_validate_json(data)

    async def update(self, automation_id: str, automation: Automation) -> Automation | None:
        """Replace an automation definition, bumping its version.

        Args:
            automation_id: Automation ID to update
            automation: Updated automation data

        Returns:
            Updated automation if found, None otherwise
        """
        existing = await self.get(automation_id)
        if not existing:
            return None

        automation.automation_id = automation_id
        automation.tenant_id = existing.tenant_id
        automation.metadata.created_at = existing.metadata.created_at
        automation.metadata.created_by = existing.metadata.created_by
        automation.metadata.updated_at = utcnow()
        automation.metadata.version = existing.metadata.version + 1

        await self._write(automation, previous_trigger=existing.trigger.type)
        return automation

    async def delete(self, automation_id: str) -> bool:
        """Delete an automation and all of its stored versions.

        Args:
            automation_id: Automation ID to delete

        Returns:
            True if deleted, False if not found
        """
        existing = await self.get(automation_id)
        if not existing:
            return False

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(
                RedisKeys.automation_trigger(existing.tenant_id, existing.trigger.type.value),
                automation_id,
            )
            pipe.srem(RedisKeys.automation_tenant(existing.tenant_id), automation_id)
            pipe.delete(RedisKeys.automation_detail(automation_id))
            pipe.delete(RedisKeys.automation_versions(automation_id))
            await pipe.execute()
        return True

    async def list_by_tenant(self, tenant_id: str) -> list[Automation]:
        """List all automations of a tenant, oldest first."""
        automation_ids = await self.redis.smembers(RedisKeys.automation_tenant(tenant_id))
        automations = await self._load_many(automation_ids)
        automations.sort(key=lambda a: a.metadata.created_at)
        return automations

    async def list_by_trigger(self, tenant_id: str, trigger_type: TriggerKind) -> list[Automation]:
        """List active automations of a tenant listening to a trigger kind.

        Args:
            tenant_id: Tenant scope
            trigger_type: Trigger kind of the incoming event

        Returns:
            Active automations, oldest first
        """
        automation_ids = await self.redis.smembers(
            RedisKeys.automation_trigger(tenant_id, TriggerKind(trigger_type).value)
        )
        automations = [a for a in await self._load_many(automation_ids) if a.active]
        automations.sort(key=lambda a: a.metadata.created_at)
        return automations

    async def set_active(self, automation_id: str, active: bool) -> Automation | None:
        """Activate or deactivate an automation.

        The definition version is unchanged; running executions are unaffected.

        Returns:
            Updated automation if found, None otherwise
        """
        automation = await self.get(automation_id)
        if not automation:
            return None

        automation.active = active
        automation.metadata.updated_at = utcnow()

        await self.redis.hset(
            RedisKeys.automation_detail(automation_id),
            mapping={
                "config": automation.model_dump_json(),
                "active": str(active).lower(),
                "updated_at": str(to_millis(automation.metadata.updated_at)),
            },
        )
        return automation

    async def _load_many(self, automation_ids: set[str]) -> list[Automation]:
        automations = []
        for automation_id in automation_ids:
            automation = await self.get(automation_id)
            if automation:
                automations.append(automation)
        return automations

    async def _write(self, automation: Automation, previous_trigger: TriggerKind | None) -> None:
        config = automation.model_dump_json()
        automation_id = automation.automation_id
        trigger_type = automation.trigger.type

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                RedisKeys.automation_detail(automation_id),
                mapping={
                    "config": config,
                    "tenant_id": automation.tenant_id,
                    "active": str(automation.active).lower(),
                    "version": str(automation.version),
                    "created_at": str(to_millis(automation.metadata.created_at)),
                    "updated_at": str(to_millis(automation.metadata.updated_at)),
                },
            )
            pipe.hset(RedisKeys.automation_versions(automation_id), str(automation.version), config)
            pipe.sadd(RedisKeys.automation_tenant(automation.tenant_id), automation_id)
            if previous_trigger is not None and previous_trigger != trigger_type:
                pipe.srem(
                    RedisKeys.automation_trigger(automation.tenant_id, previous_trigger.value),
                    automation_id,
                )
            pipe.sadd(
                RedisKeys.automation_trigger(automation.tenant_id, trigger_type.value),
                automation_id,
            )
            await pipe.execute()

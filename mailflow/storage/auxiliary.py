"""Auxiliary storage operations (idempotency)."""

from redis.asyncio import Redis

from mailflow.core.config import get_settings
from mailflow.storage.redis_client import RedisKeys, get_redis


class IdempotencyStore:
    """Remembers processed event ids for a bounded time.

    Besides the whole event, each automation an event started is remembered
    separately so a redelivered event does not start it twice.
    """

    def __init__(self, redis: Redis | None = None, ttl_seconds: int | None = None):
        self._redis = redis
        self._ttl_seconds = ttl_seconds

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds or get_settings().event_dedup_ttl_seconds

    async def is_processed(self, event_id: str) -> bool:
        """Check if event has been processed."""
        return await self.redis.exists(RedisKeys.processed(event_id)) > 0

    async def mark_processed(self, event_id: str) -> bool:
        """Mark event as processed.

        Args:
            event_id: Event ID to mark

        Returns:
            True if newly marked, False if already existed
        """
        result = await self.redis.set(RedisKeys.processed(event_id), "1", nx=True, ex=self.ttl_seconds)
        return bool(result)

    async def is_started(self, event_id: str, automation_id: str) -> bool:
        """Check if an event already started an automation."""
        return await self.redis.exists(RedisKeys.started(event_id, automation_id)) > 0

    async def mark_started(self, event_id: str, automation_id: str) -> None:
        await self.redis.set(RedisKeys.started(event_id, automation_id), "1", ex=self.ttl_seconds)

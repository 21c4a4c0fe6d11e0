"""Segment definition storage operations."""

from datetime import datetime

from redis.asyncio import Redis

from mailflow.core.timeutil import utcnow
from mailflow.models.segment import SegmentDefinition
from mailflow.storage.redis_client import RedisKeys, get_redis


class SegmentStore:
    """Segment storage using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(self, segment: SegmentDefinition) -> SegmentDefinition:
        """Create or replace a segment."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(RedisKeys.segment_detail(segment.segment_id), segment.model_dump_json())
            pipe.sadd(RedisKeys.segment_tenant(segment.tenant_id), segment.segment_id)
            await pipe.execute()
        return segment

    async def get(self, segment_id: str, tenant_id: str | None = None) -> SegmentDefinition | None:
        """Get a segment by ID.

        Args:
            segment_id: Segment ID
            tenant_id: When given, segments of other tenants are treated as missing

        Returns:
            Segment if found, None otherwise
        """
        data = await self.redis.get(RedisKeys.segment_detail(segment_id))
        if not data:
            return None
        segment = SegmentDefinition.model_validate_json(data)
        if tenant_id is not None and segment.tenant_id != tenant_id:
            return None
        return segment

    async def delete(self, segment_id: str) -> bool:
        """Delete a segment.

        Returns:
            True if deleted, False if not found
        """
        existing = await self.get(segment_id)
        if not existing:
            return False

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(RedisKeys.segment_detail(segment_id))
            pipe.srem(RedisKeys.segment_tenant(existing.tenant_id), segment_id)
            await pipe.execute()
        return True

    async def list_by_tenant(self, tenant_id: str, active_only: bool = False) -> list[SegmentDefinition]:
        """List segments of a tenant, newest first."""
        segment_ids = await self.redis.smembers(RedisKeys.segment_tenant(tenant_id))
        segments = []
        for segment_id in segment_ids:
            segment = await self.get(segment_id)
            if segment and (segment.active or not active_only):
                segments.append(segment)
        segments.sort(key=lambda s: s.created_at, reverse=True)
        return segments

    async def update_count(
        self,
        segment_id: str,
        count: int,
        calculated_at: datetime | None = None,
    ) -> SegmentDefinition | None:
        """Store a recomputed audience size."""
        segment = await self.get(segment_id)
        if not segment:
            return None

        segment.subscriber_count = count
        segment.last_calculated_at = calculated_at or utcnow()
        segment.updated_at = segment.last_calculated_at
        return await self.save(segment)

"""Subscriber storage and segment query execution.

The store doubles as the generic executor for compiled segments: predicates
are evaluated in memory with :func:`mailflow.segmentation.renderers.matches`
over the tenant's subscriber set.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import WatchError

from mailflow.core.errors import ClaimConflictError, NotFoundError
from mailflow.core.timeutil import utcnow
from mailflow.models.subscriber import WRITABLE_PROFILE_FIELDS, Subscriber
from mailflow.segmentation.compiler import SegmentQuery
from mailflow.segmentation.renderers import matches
from mailflow.storage.redis_client import RedisKeys, get_redis

_MAX_WATCH_RETRIES = 5

# Returns True when the subscriber was changed
Mutation = Callable[[Subscriber], bool]


class SubscriberStore:
    """Subscriber storage using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(self, subscriber: Subscriber) -> Subscriber:
        """Create or replace a subscriber."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(
                RedisKeys.subscriber_detail(subscriber.tenant_id, subscriber.subscriber_id),
                subscriber.model_dump_json(),
            )
            pipe.sadd(RedisKeys.subscriber_tenant(subscriber.tenant_id), subscriber.subscriber_id)
            await pipe.execute()
        return subscriber

    async def get(self, tenant_id: str, subscriber_id: str) -> Subscriber | None:
        """Get a subscriber within a tenant.

        Args:
            tenant_id: Tenant scope
            subscriber_id: Subscriber ID

        Returns:
            Subscriber if found, None otherwise
        """
        data = await self.redis.get(RedisKeys.subscriber_detail(tenant_id, subscriber_id))
        if not data:
            return None
        return Subscriber.model_validate_json(data)

    async def delete(self, tenant_id: str, subscriber_id: str) -> bool:
        """Delete a subscriber.

        Returns:
            True if deleted, False if not found
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(RedisKeys.subscriber_detail(tenant_id, subscriber_id))
            pipe.srem(RedisKeys.subscriber_tenant(tenant_id), subscriber_id)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    async def list_by_tenant(self, tenant_id: str) -> list[Subscriber]:
        """Load every subscriber of a tenant, newest first."""
        subscriber_ids = await self.redis.smembers(RedisKeys.subscriber_tenant(tenant_id))
        if not subscriber_ids:
            return []

        keys = [RedisKeys.subscriber_detail(tenant_id, sid) for sid in sorted(subscriber_ids)]
        payloads = await self.redis.mget(keys)
        subscribers = [Subscriber.model_validate_json(p) for p in payloads if p]
        subscribers.sort(key=lambda s: (s.created_at, s.subscriber_id), reverse=True)
        return subscribers

    async def mutate(self, tenant_id: str, subscriber_id: str, mutation: Mutation) -> Subscriber:
        """Apply a mutation under an optimistic transaction.

        Args:
            tenant_id: Tenant scope
            subscriber_id: Subscriber ID
            mutation: Callable changing the subscriber in place

        Returns:
            Subscriber after the mutation

        Raises:
            NotFoundError: If the subscriber does not exist
        """
        key = RedisKeys.subscriber_detail(tenant_id, subscriber_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(_MAX_WATCH_RETRIES):
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        await pipe.unwatch()
                        raise NotFoundError(f"Subscriber {subscriber_id} not found")

                    subscriber = Subscriber.model_validate_json(data)
                    if not mutation(subscriber):
                        await pipe.unwatch()
                        return subscriber

                    pipe.multi()
                    pipe.set(key, subscriber.model_dump_json())
                    await pipe.execute()
                    return subscriber
                except WatchError:
                    continue

        raise ClaimConflictError(f"Subscriber {subscriber_id} kept changing during update")

    async def add_to_list(self, tenant_id: str, subscriber_id: str, list_id: str) -> Subscriber:
        def _apply(subscriber: Subscriber) -> bool:
            if list_id in subscriber.lists:
                return False
            subscriber.lists.append(list_id)
            return True

        return await self.mutate(tenant_id, subscriber_id, _apply)

    async def remove_from_list(self, tenant_id: str, subscriber_id: str, list_id: str) -> Subscriber:
        def _apply(subscriber: Subscriber) -> bool:
            if list_id not in subscriber.lists:
                return False
            subscriber.lists = [entry for entry in subscriber.lists if entry != list_id]
            return True

        return await self.mutate(tenant_id, subscriber_id, _apply)

    async def add_tag(self, tenant_id: str, subscriber_id: str, tag: str) -> Subscriber:
        def _apply(subscriber: Subscriber) -> bool:
            if tag in subscriber.tags:
                return False
            subscriber.tags.append(tag)
            return True

        return await self.mutate(tenant_id, subscriber_id, _apply)

    async def remove_tag(self, tenant_id: str, subscriber_id: str, tag: str) -> Subscriber:
        def _apply(subscriber: Subscriber) -> bool:
            if tag not in subscriber.tags:
                return False
            subscriber.tags = [entry for entry in subscriber.tags if entry != tag]
            return True

        return await self.mutate(tenant_id, subscriber_id, _apply)

    async def update_field(self, tenant_id: str, subscriber_id: str, field: str, value: Any) -> Subscriber:
        """Set a writable profile attribute, or a custom field for any other name."""

        def _apply(subscriber: Subscriber) -> bool:
            if field in WRITABLE_PROFILE_FIELDS:
                if getattr(subscriber, field) == value:
                    return False
                setattr(subscriber, field, value)
                return True
            if field in subscriber.custom_fields and subscriber.custom_fields[field] == value:
                return False
            subscriber.custom_fields[field] = value
            return True

        return await self.mutate(tenant_id, subscriber_id, _apply)

    async def touch(self, tenant_id: str, subscriber_id: str, at: datetime | None = None) -> Subscriber:
        """Record subscriber activity."""
        at = at or utcnow()

        def _apply(subscriber: Subscriber) -> bool:
            subscriber.last_active_at = at
            return True

        return await self.mutate(tenant_id, subscriber_id, _apply)

    async def fetch_rows(self, query: SegmentQuery, now: datetime | None = None) -> list[Subscriber]:
        """Execute the rows form of a compiled segment.

        Args:
            query: Rows query
            now: Reference time for relative values

        Returns:
            Matching subscribers, newest first, paged by limit/offset
        """
        matched = await self._match(query, now)
        end = None if query.limit is None else query.offset + query.limit
        return matched[query.offset:end]

    async def fetch_count(self, query: SegmentQuery, now: datetime | None = None) -> int:
        """Execute the count form of a compiled segment."""
        return len(await self._match(query, now))

    async def _match(self, query: SegmentQuery, now: datetime | None) -> list[Subscriber]:
        now = now or utcnow()
        segment = query.segment
        subscribers = await self.list_by_tenant(segment.tenant_id)
        return [s for s in subscribers if matches(segment, s, now)]

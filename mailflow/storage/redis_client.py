"""Redis client management."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.asyncio import Redis

from mailflow.core.config import get_settings

# Global connection pool
_pool: redis.ConnectionPool | None = None


async def init_redis_pool() -> None:
    """Initialize Redis connection pool."""
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_connections,
        )


async def close_redis_pool() -> None:
    """Close Redis connection pool."""
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


def get_redis() -> Redis:
    """Get Redis client from pool.

    Raises:
        RuntimeError: If pool not initialized
    """
    if _pool is None:
        raise RuntimeError("Redis pool not initialized. Call init_redis_pool() first.")
    return redis.Redis(connection_pool=_pool)


@asynccontextmanager
async def redis_client() -> AsyncIterator[Redis]:
    """Context manager for a pooled Redis client."""
    client = get_redis()
    try:
        yield client
    finally:
        await client.aclose()


class RedisKeys:
    """Redis key patterns."""

    # Automations
    AUTOMATION_DETAIL = "mailflow:automations:detail:{automation_id}"
    AUTOMATION_VERSIONS = "mailflow:automations:versions:{automation_id}"
    AUTOMATION_TENANT = "mailflow:automations:tenant:{tenant_id}"
    AUTOMATION_TRIGGER = "mailflow:automations:trigger:{tenant_id}:{trigger_type}"

    # Executions
    EXECUTION_DETAIL = "mailflow:executions:detail:{execution_id}"
    EXECUTION_LOG = "mailflow:executions:log:{execution_id}"
    EXECUTION_ACTIVE = "mailflow:executions:active:{automation_id}:{subscriber_id}"
    EXECUTION_BY_AUTOMATION = "mailflow:executions:automation:{automation_id}"
    EXECUTION_BY_SUBSCRIBER = "mailflow:executions:subscriber:{tenant_id}:{subscriber_id}"
    EXECUTION_DUE = "mailflow:executions:due"

    # Subscribers and templates
    SUBSCRIBER_DETAIL = "mailflow:subscribers:detail:{tenant_id}:{subscriber_id}"
    SUBSCRIBER_TENANT = "mailflow:subscribers:tenant:{tenant_id}"
    TEMPLATE_DETAIL = "mailflow:templates:{tenant_id}:{template_id}"

    # Segments
    SEGMENT_DETAIL = "mailflow:segments:detail:{segment_id}"
    SEGMENT_TENANT = "mailflow:segments:tenant:{tenant_id}"

    # Campaigns
    CAMPAIGN_DETAIL = "mailflow:campaigns:detail:{campaign_id}"
    CAMPAIGN_TENANT = "mailflow:campaigns:tenant:{tenant_id}"
    CAMPAIGN_REMAINDER = "mailflow:campaigns:remainder:{campaign_id}"
    CAMPAIGN_VARIANT_STATS = "mailflow:campaigns:variant_stats:{campaign_id}:{variant}"
    CAMPAIGN_CONTINUATIONS = "mailflow:campaigns:continuations"

    # Auxiliary
    PROCESSED = "mailflow:processed:{event_id}"
    STARTED = "mailflow:processed:{event_id}:{automation_id}"

    @classmethod
    def automation_detail(cls, automation_id: str) -> str:
        return cls.AUTOMATION_DETAIL.format(automation_id=automation_id)

    @classmethod
    def automation_versions(cls, automation_id: str) -> str:
        return cls.AUTOMATION_VERSIONS.format(automation_id=automation_id)

    @classmethod
    def automation_tenant(cls, tenant_id: str) -> str:
        return cls.AUTOMATION_TENANT.format(tenant_id=tenant_id)

    @classmethod
    def automation_trigger(cls, tenant_id: str, trigger_type: str) -> str:
        return cls.AUTOMATION_TRIGGER.format(tenant_id=tenant_id, trigger_type=trigger_type)

    @classmethod
    def execution_detail(cls, execution_id: str) -> str:
        return cls.EXECUTION_DETAIL.format(execution_id=execution_id)

    @classmethod
    def execution_log(cls, execution_id: str) -> str:
        return cls.EXECUTION_LOG.format(execution_id=execution_id)

    @classmethod
    def execution_active(cls, automation_id: str, subscriber_id: str) -> str:
        return cls.EXECUTION_ACTIVE.format(automation_id=automation_id, subscriber_id=subscriber_id)

    @classmethod
    def execution_by_automation(cls, automation_id: str) -> str:
        return cls.EXECUTION_BY_AUTOMATION.format(automation_id=automation_id)

    @classmethod
    def execution_by_subscriber(cls, tenant_id: str, subscriber_id: str) -> str:
        return cls.EXECUTION_BY_SUBSCRIBER.format(tenant_id=tenant_id, subscriber_id=subscriber_id)

    @classmethod
    def subscriber_detail(cls, tenant_id: str, subscriber_id: str) -> str:
        return cls.SUBSCRIBER_DETAIL.format(tenant_id=tenant_id, subscriber_id=subscriber_id)

    @classmethod
    def subscriber_tenant(cls, tenant_id: str) -> str:
        return cls.SUBSCRIBER_TENANT.format(tenant_id=tenant_id)

    @classmethod
    def template_detail(cls, tenant_id: str, template_id: str) -> str:
        return cls.TEMPLATE_DETAIL.format(tenant_id=tenant_id, template_id=template_id)

    @classmethod
    def segment_detail(cls, segment_id: str) -> str:
        return cls.SEGMENT_DETAIL.format(segment_id=segment_id)

    @classmethod
    def segment_tenant(cls, tenant_id: str) -> str:
        return cls.SEGMENT_TENANT.format(tenant_id=tenant_id)

    @classmethod
    def campaign_detail(cls, campaign_id: str) -> str:
        return cls.CAMPAIGN_DETAIL.format(campaign_id=campaign_id)

    @classmethod
    def campaign_tenant(cls, tenant_id: str) -> str:
        return cls.CAMPAIGN_TENANT.format(tenant_id=tenant_id)

    @classmethod
    def campaign_remainder(cls, campaign_id: str) -> str:
        return cls.CAMPAIGN_REMAINDER.format(campaign_id=campaign_id)

    @classmethod
    def campaign_variant_stats(cls, campaign_id: str, variant: str) -> str:
        return cls.CAMPAIGN_VARIANT_STATS.format(campaign_id=campaign_id, variant=variant)

    @classmethod
    def processed(cls, event_id: str) -> str:
        return cls.PROCESSED.format(event_id=event_id)

    @classmethod
    def started(cls, event_id: str, automation_id: str) -> str:
        return cls.STARTED.format(event_id=event_id, automation_id=automation_id)

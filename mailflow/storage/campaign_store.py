"""Campaign storage: definitions, A/B remainders, continuations and variant counters."""

from datetime import datetime

from redis.asyncio import Redis

from mailflow.core.errors import ClaimConflictError
from mailflow.core.timeutil import to_millis
from mailflow.models.campaign import Campaign
from mailflow.storage.redis_client import RedisKeys, get_redis

VARIANT_COUNTERS = ("sent", "opened", "clicked", "converted")


class CampaignStore:
    """Campaign storage using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(self, campaign: Campaign) -> Campaign:
        """Create or replace a campaign."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(RedisKeys.campaign_detail(campaign.campaign_id), campaign.model_dump_json())
            pipe.sadd(RedisKeys.campaign_tenant(campaign.tenant_id), campaign.campaign_id)
            await pipe.execute()
        return campaign

    async def get(self, campaign_id: str) -> Campaign | None:
        data = await self.redis.get(RedisKeys.campaign_detail(campaign_id))
        if not data:
            return None
        return Campaign.model_validate_json(data)

    async def list_by_tenant(self, tenant_id: str) -> list[Campaign]:
        """List campaigns of a tenant, newest first."""
        campaign_ids = await self.redis.smembers(RedisKeys.campaign_tenant(tenant_id))
        campaigns = []
        for campaign_id in campaign_ids:
            campaign = await self.get(campaign_id)
            if campaign:
                campaigns.append(campaign)
        campaigns.sort(key=lambda c: c.created_at, reverse=True)
        return campaigns

    async def schedule_continuation(
        self,
        campaign_id: str,
        due_at: datetime,
        remaining_ids: list[str],
    ) -> None:
        """Persist the A/B remainder and schedule the winner send.

        Args:
            campaign_id: Campaign ID
            due_at: When the winner should be decided
            remaining_ids: Subscribers held back from the test
        """
        remainder_key = RedisKeys.campaign_remainder(campaign_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(remainder_key)
            if remaining_ids:
                pipe.rpush(remainder_key, *remaining_ids)
            pipe.zadd(RedisKeys.CAMPAIGN_CONTINUATIONS, {campaign_id: to_millis(due_at)})
            await pipe.execute()

    async def due_continuations(self, now: datetime, limit: int) -> list[str]:
        """Campaign ids whose winner send is due."""
        return await self.redis.zrangebyscore(
            RedisKeys.CAMPAIGN_CONTINUATIONS,
            "-inf",
            to_millis(now),
            start=0,
            num=limit,
        )

    async def claim_continuation(self, campaign_id: str) -> list[str]:
        """Claim a due continuation and take its remainder.

        Returns:
            Subscriber ids waiting for the winning variant

        Raises:
            ClaimConflictError: If another worker claimed it first
        """
        removed = await self.redis.zrem(RedisKeys.CAMPAIGN_CONTINUATIONS, campaign_id)
        if not removed:
            raise ClaimConflictError(f"Continuation for campaign {campaign_id} already claimed")

        remainder_key = RedisKeys.campaign_remainder(campaign_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrange(remainder_key, 0, -1)
            pipe.delete(remainder_key)
            remaining, _ = await pipe.execute()
        return list(remaining)

    async def restore_remainder(self, campaign_id: str, remaining_ids: list[str]) -> None:
        """Put a claimed remainder back without scheduling a continuation."""
        remainder_key = RedisKeys.campaign_remainder(campaign_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(remainder_key)
            if remaining_ids:
                pipe.rpush(remainder_key, *remaining_ids)
            await pipe.execute()

    async def remainder(self, campaign_id: str) -> list[str]:
        """Subscriber ids currently held back for a campaign."""
        return list(await self.redis.lrange(RedisKeys.campaign_remainder(campaign_id), 0, -1))

    async def incr_variant(self, campaign_id: str, variant: str, counter: str, amount: int = 1) -> int:
        """Increment one variant counter (sent, opened, clicked or converted)."""
        if counter not in VARIANT_COUNTERS:
            raise ValueError(f"Unknown variant counter: {counter}")
        return await self.redis.hincrby(RedisKeys.campaign_variant_stats(campaign_id, variant), counter, amount)

    async def variant_counters(self, campaign_id: str, variant: str) -> dict[str, int]:
        """Read all counters of a variant; missing counters are zero."""
        raw = await self.redis.hgetall(RedisKeys.campaign_variant_stats(campaign_id, variant))
        return {counter: int(raw.get(counter, 0)) for counter in VARIANT_COUNTERS}

"""Email template storage operations."""

from redis.asyncio import Redis

from mailflow.models.subscriber import EmailTemplate
from mailflow.storage.redis_client import RedisKeys, get_redis


class TemplateStore:
    """Tenant-scoped template storage using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(self, template: EmailTemplate) -> EmailTemplate:
        await self.redis.set(
            RedisKeys.template_detail(template.tenant_id, template.template_id),
            template.model_dump_json(),
        )
        return template

    async def get(self, tenant_id: str, template_id: str) -> EmailTemplate | None:
        """Get a template; templates of other tenants are never visible."""
        data = await self.redis.get(RedisKeys.template_detail(tenant_id, template_id))
        if not data:
            return None
        return EmailTemplate.model_validate_json(data)

    async def delete(self, tenant_id: str, template_id: str) -> bool:
        return bool(await self.redis.delete(RedisKeys.template_detail(tenant_id, template_id)))

"""Template and template version storage."""

from redis.asyncio import Redis

from notiflow.models.template import Template, TemplateVersion
from notiflow.storage.redis_client import RedisKeys, get_redis


class TemplateStore:
    """Templates and their immutable version history using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(self, template: Template, version: TemplateVersion | None = None) -> Template:
        """Store the template, appending ``version`` to its history if given.

        Args:
            template: Current template state
            version: New history row for a content change

        Returns:
            Stored template
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(RedisKeys.template(template.template_id), template.model_dump_json())
            pipe.sadd(RedisKeys.TEMPLATE_ALL, template.template_id)
            if version is not None:
                pipe.hset(
                    RedisKeys.template_versions(template.template_id),
                    str(version.version),
                    version.model_dump_json(),
                )
            await pipe.execute()
        return template

    async def get(self, template_id: str) -> Template | None:
        data = await self.redis.get(RedisKeys.template(template_id))
        if not data:
            return None
        return Template.model_validate_json(data)

    async def list_all(self) -> list[Template]:
        ids = sorted(await self.redis.smembers(RedisKeys.TEMPLATE_ALL))
        if not ids:
            return []
        rows = await self.redis.mget([RedisKeys.template(tid) for tid in ids])
        return [Template.model_validate_json(row) for row in rows if row]

    async def get_versions(self, template_id: str) -> list[TemplateVersion]:
        """Version history, newest first."""
        rows = await self.redis.hvals(RedisKeys.template_versions(template_id))
        versions = [TemplateVersion.model_validate_json(row) for row in rows]
        versions.sort(key=lambda v: v.version, reverse=True)
        return versions

    async def get_version(self, template_id: str, version: int) -> TemplateVersion | None:
        data = await self.redis.hget(RedisKeys.template_versions(template_id), str(version))
        return TemplateVersion.model_validate_json(data) if data else None

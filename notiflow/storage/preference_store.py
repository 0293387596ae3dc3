"""User preference storage."""

from redis.asyncio import Redis

from notiflow.models.preference import Preference
from notiflow.storage.redis_client import RedisKeys, get_redis


class PreferenceStore:
    """Per-user preferences, one hash field per template type."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def get(self, user_id: str, template_type: str) -> Preference | None:
        data = await self.redis.hget(RedisKeys.preferences(user_id), template_type)
        return Preference.model_validate_json(data) if data else None

    async def get_or_create(self, default: Preference) -> Preference:
        """Return the stored preference, storing ``default`` if there is none."""
        key = RedisKeys.preferences(default.user_id)
        created = await self.redis.hsetnx(key, default.template_type, default.model_dump_json())
        if created:
            return default
        data = await self.redis.hget(key, default.template_type)
        return Preference.model_validate_json(data) if data else default

    async def save(self, preference: Preference) -> Preference:
        await self.redis.hset(
            RedisKeys.preferences(preference.user_id),
            preference.template_type,
            preference.model_dump_json(),
        )
        return preference

    async def list_for_user(self, user_id: str) -> list[Preference]:
        rows = await self.redis.hvals(RedisKeys.preferences(user_id))
        preferences = [Preference.model_validate_json(row) for row in rows]
        preferences.sort(key=lambda p: p.template_type)
        return preferences

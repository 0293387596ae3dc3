"""A/B test storage."""

from redis.asyncio import Redis

from notiflow.models.ab_test import ABTest, ABTestEvent, ABTestStatus
from notiflow.storage.redis_client import RedisKeys, get_redis


class ABTestStore:
    """A/B tests, their event log and per-variant counters using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(self, test: ABTest) -> ABTest:
        """Store a test and keep the active-per-template index in step with its status."""
        active_key = RedisKeys.abtest_active(test.template_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(RedisKeys.abtest(test.test_id), test.model_dump_json())
            pipe.sadd(RedisKeys.ABTEST_ALL, test.test_id)
            if test.status == ABTestStatus.ACTIVE:
                pipe.sadd(active_key, test.test_id)
            else:
                pipe.srem(active_key, test.test_id)
            await pipe.execute()
        return test

    async def get(self, test_id: str) -> ABTest | None:
        data = await self.redis.get(RedisKeys.abtest(test_id))
        if not data:
            return None
        return ABTest.model_validate_json(data)

    async def list_all(self) -> list[ABTest]:
        ids = sorted(await self.redis.smembers(RedisKeys.ABTEST_ALL))
        if not ids:
            return []
        rows = await self.redis.mget([RedisKeys.abtest(tid) for tid in ids])
        return [ABTest.model_validate_json(row) for row in rows if row]

    async def active_ids(self, template_id: str) -> list[str]:
        return sorted(await self.redis.smembers(RedisKeys.abtest_active(template_id)))

    async def record_event(self, event: ABTestEvent) -> int:
        """Append an event and bump its variant counter.

        Returns:
            New counter value for (variant, event)
        """
        field = f"{event.variant_id}:{event.event.value}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.rpush(RedisKeys.abtest_events(event.test_id), event.model_dump_json())
            pipe.hincrby(RedisKeys.abtest_counts(event.test_id), field, 1)
            _, count = await pipe.execute()
        return int(count)

    async def counts(self, test_id: str) -> dict[str, int]:
        """Raw counters keyed ``variant_id:event``."""
        data = await self.redis.hgetall(RedisKeys.abtest_counts(test_id))
        return {field: int(value) for field, value in data.items()}

    async def events(self, test_id: str) -> list[ABTestEvent]:
        rows = await self.redis.lrange(RedisKeys.abtest_events(test_id), 0, -1)
        return [ABTestEvent.model_validate_json(row) for row in rows]

"""Auxiliary storage operations (idempotency, digest queue, period locks)."""

from redis.asyncio import Redis

from notiflow.models.preference import DigestFrequency
from notiflow.storage.redis_client import RedisKeys, get_redis


class IdempotencyStore:
    """Consumed-event bookkeeping so redelivered messages are not fanned out twice."""

    TTL_SECONDS = 86400  # 1 day

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def is_processed(self, event_id: str) -> bool:
        """Check if event has been processed.

        Args:
            event_id: Event ID to check

        Returns:
            True if already processed
        """
        return await self.redis.exists(RedisKeys.processed(event_id)) > 0

    async def mark_processed(self, event_id: str) -> bool:
        """Mark event as processed.

        Args:
            event_id: Event ID to mark

        Returns:
            True if newly marked, False if already existed
        """
        result = await self.redis.set(RedisKeys.processed(event_id), "1", nx=True, ex=self.TTL_SECONDS)
        return bool(result)


class DigestQueue:
    """Notifications deferred to a user's next digest."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def push(self, frequency: DigestFrequency, user_id: str, notification_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.rpush(RedisKeys.digest_queue(frequency.value, user_id), notification_id)
            pipe.sadd(RedisKeys.digest_users(frequency.value), user_id)
            await pipe.execute()

    async def users(self, frequency: DigestFrequency) -> list[str]:
        return sorted(await self.redis.smembers(RedisKeys.digest_users(frequency.value)))

    async def drain(self, frequency: DigestFrequency, user_id: str) -> list[str]:
        """Atomically take every queued id for a user.

        Returns:
            Notification ids in the order they were deferred
        """
        key = RedisKeys.digest_queue(frequency.value, user_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrange(key, 0, -1)
            pipe.delete(key)
            pipe.srem(RedisKeys.digest_users(frequency.value), user_id)
            ids, _, _ = await pipe.execute()
        return ids


class PeriodLock:
    """One-shot claims for periodic jobs (e.g. the daily digest of a given date)."""

    TTL_SECONDS = 8 * 86400

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def acquire(self, frequency: DigestFrequency, period: str) -> bool:
        """Claim ``period``; only the first caller gets True."""
        result = await self.redis.set(
            RedisKeys.digest_run(frequency.value, period),
            "1",
            nx=True,
            ex=self.TTL_SECONDS,
        )
        return bool(result)

"""Rate limit policy and throttle counter storage."""

from datetime import datetime

from redis.asyncio import Redis

from notiflow.models.common import to_timestamp
from notiflow.models.rate_limit import RateLimitPolicy, ThrottleWindow, WindowType
from notiflow.storage.redis_client import RedisKeys, get_redis


class RateLimitStore:
    """Rate limit policies and per-window counters using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def get_or_create_policy(self, default: RateLimitPolicy) -> RateLimitPolicy:
        """Return the stored policy for ``default.key``, creating it if absent.

        Creation uses SET NX so concurrent first sends agree on one policy.

        Args:
            default: Policy to store when none exists yet

        Returns:
            Stored policy
        """
        slug = default.key.slug()
        key = RedisKeys.rate_policy(slug)
        created = await self.redis.set(key, default.model_dump_json(), nx=True)
        if created:
            await self.redis.sadd(RedisKeys.rate_policies_user(default.user_id), slug)
            return default
        data = await self.redis.get(key)
        return RateLimitPolicy.model_validate_json(data) if data else default

    async def save_policy(self, policy: RateLimitPolicy) -> RateLimitPolicy:
        slug = policy.key.slug()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(RedisKeys.rate_policy(slug), policy.model_dump_json())
            pipe.sadd(RedisKeys.rate_policies_user(policy.user_id), slug)
            await pipe.execute()
        return policy

    async def list_policies(self, user_id: str) -> list[RateLimitPolicy]:
        slugs = sorted(await self.redis.smembers(RedisKeys.rate_policies_user(user_id)))
        if not slugs:
            return []
        rows = await self.redis.mget([RedisKeys.rate_policy(slug) for slug in slugs])
        return [RateLimitPolicy.model_validate_json(row) for row in rows if row]

    async def get_window(
        self,
        policy: RateLimitPolicy,
        window: WindowType,
        window_start: datetime,
        window_end: datetime,
    ) -> ThrottleWindow:
        """Counter for one exact window boundary; missing counts as zero."""
        slug = policy.key.slug()
        value = await self.redis.get(RedisKeys.throttle(slug, window.value, int(to_timestamp(window_start))))
        return ThrottleWindow(
            slug=slug,
            window_type=window,
            window_start=window_start,
            window_end=window_end,
            count=int(value) if value else 0,
        )

    async def increment(
        self,
        policy: RateLimitPolicy,
        windows: list[tuple[WindowType, datetime, datetime]],
    ) -> list[int]:
        """Increment every window counter of ``policy`` in one transaction.

        Args:
            policy: Policy whose counters are charged
            windows: (window type, start, end) triples

        Returns:
            New counts in the order of ``windows``
        """
        slug = policy.key.slug()
        async with self.redis.pipeline(transaction=True) as pipe:
            for window, start, end in windows:
                counter = RedisKeys.throttle(slug, window.value, int(to_timestamp(start)))
                pipe.incr(counter)
                pipe.expireat(counter, int(to_timestamp(end)) + 1)
            results = await pipe.execute()
        return [int(count) for count in results[::2]]

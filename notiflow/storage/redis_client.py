"""Redis client management."""

from typing import Mapping

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import WatchError

from notiflow.core.config import get_settings

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
            max_connections=20,
        )


async def close_redis_pool() -> None:
    """Close Redis connection pool."""
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


def get_redis() -> Redis:
    """Get Redis client from pool.

    Returns:
        Redis client instance

    Raises:
        RuntimeError: If pool not initialized
    """
    if _pool is None:
        raise RuntimeError("Redis pool not initialized. Call init_redis_pool() first.")
    return redis.Redis(connection_pool=_pool)


async def compare_and_set(
    client: Redis,
    key: str,
    field: str,
    expected: str,
    mapping: Mapping[str, str],
) -> bool:
    """Atomically write ``mapping`` into hash ``key`` if ``field == expected``.

    Used to claim schedules and batches (``pending -> processing``) so two
    concurrent sweeps never both run the same item.

    Returns:
        True if the write happened
    """
    async with client.pipeline(transaction=True) as pipe:
        while True:
            try:
                await pipe.watch(key)
                current = await pipe.hget(key, field)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.hset(key, mapping=dict(mapping))
                await pipe.execute()
                return True
            except WatchError:
                continue


class RedisKeys:
    """Redis key patterns."""

    # Notifications
    NOTIFICATION = "notify:notification:{notification_id}"
    USER_NOTIFICATIONS = "notify:user:{user_id}:notifications"
    USER_UNREAD = "notify:user:{user_id}:unread"
    GROUP_ORDER = "notify:group:{user_id}:{category}:{group_id}"

    # Delivery tracking
    DELIVERY = "notify:delivery:{record_id}"
    DELIVERY_BY_NOTIFICATION = "notify:delivery:by_notification:{notification_id}"
    DELIVERY_INDEX = "notify:delivery:index"
    DELIVERY_USER_INDEX = "notify:delivery:by_user:{user_id}"
    DELIVERY_TEMPLATE_INDEX = "notify:delivery:by_template:{template_id}"

    # Rate limiting
    RATE_POLICY = "notify:rate:policy:{slug}"
    RATE_POLICIES_USER = "notify:rate:policies:{user_id}"
    THROTTLE = "notify:rate:throttle:{slug}:{window}:{start}"

    # Batching
    BATCH_RULES = "notify:batch:rules:{user_id}"
    BATCH = "notify:batch:{batch_id}"
    BATCH_MEMBERS = "notify:batch:{batch_id}:members"
    BATCH_OPEN = "notify:batch:open:{user_id}:{template_type}:{category}:{group_id}"
    BATCH_PENDING = "notify:batch:pending"
    BATCH_FULL = "notify:batch:full"

    # Scheduling
    SCHEDULE = "notify:schedule:{schedule_id}"
    SCHEDULE_ALL = "notify:schedule:all"
    SCHEDULE_DUE = "notify:schedule:due"

    # Templates
    TEMPLATE = "notify:template:{template_id}"
    TEMPLATE_VERSIONS = "notify:template:{template_id}:versions"
    TEMPLATE_ALL = "notify:template:all"

    # A/B tests
    ABTEST = "notify:abtest:{test_id}"
    ABTEST_ALL = "notify:abtest:all"
    ABTEST_ACTIVE = "notify:abtest:active:{template_id}"
    ABTEST_EVENTS = "notify:abtest:{test_id}:events"
    ABTEST_COUNTS = "notify:abtest:{test_id}:counts"

    # Preferences and users
    PREFERENCES = "notify:preferences:{user_id}"
    USER_CONTACT = "notify:users:{user_id}"
    USER_ALL = "notify:users:all"

    # Auxiliary
    PROCESSED = "notify:processed:{event_id}"
    DIGEST_QUEUE = "notify:digest:{frequency}:{user_id}"
    DIGEST_USERS = "notify:digest:{frequency}:users"
    DIGEST_RUN = "notify:digest:run:{frequency}:{period}"

    @classmethod
    def notification(cls, notification_id: str) -> str:
        return cls.NOTIFICATION.format(notification_id=notification_id)

    @classmethod
    def user_notifications(cls, user_id: str) -> str:
        return cls.USER_NOTIFICATIONS.format(user_id=user_id)

    @classmethod
    def user_unread(cls, user_id: str) -> str:
        return cls.USER_UNREAD.format(user_id=user_id)

    @classmethod
    def group_order(cls, user_id: str, category: str, group_id: str) -> str:
        return cls.GROUP_ORDER.format(user_id=user_id, category=category, group_id=group_id)

    @classmethod
    def delivery(cls, record_id: str) -> str:
        return cls.DELIVERY.format(record_id=record_id)

    @classmethod
    def delivery_by_notification(cls, notification_id: str) -> str:
        return cls.DELIVERY_BY_NOTIFICATION.format(notification_id=notification_id)

    @classmethod
    def delivery_user_index(cls, user_id: str) -> str:
        return cls.DELIVERY_USER_INDEX.format(user_id=user_id)

    @classmethod
    def delivery_template_index(cls, template_id: str) -> str:
        return cls.DELIVERY_TEMPLATE_INDEX.format(template_id=template_id)

    @classmethod
    def rate_policy(cls, slug: str) -> str:
        return cls.RATE_POLICY.format(slug=slug)

    @classmethod
    def rate_policies_user(cls, user_id: str) -> str:
        return cls.RATE_POLICIES_USER.format(user_id=user_id)

    @classmethod
    def throttle(cls, slug: str, window: str, start: int) -> str:
        return cls.THROTTLE.format(slug=slug, window=window, start=start)

    @classmethod
    def batch_rules(cls, user_id: str) -> str:
        return cls.BATCH_RULES.format(user_id=user_id)

    @classmethod
    def batch(cls, batch_id: str) -> str:
        return cls.BATCH.format(batch_id=batch_id)

    @classmethod
    def batch_members(cls, batch_id: str) -> str:
        return cls.BATCH_MEMBERS.format(batch_id=batch_id)

    @classmethod
    def batch_open(
        cls,
        user_id: str,
        template_type: str,
        category: str,
        group_id: str | None,
    ) -> str:
        return cls.BATCH_OPEN.format(
            user_id=user_id,
            template_type=template_type,
            category=category,
            group_id=group_id or "-",
        )

    @classmethod
    def schedule(cls, schedule_id: str) -> str:
        return cls.SCHEDULE.format(schedule_id=schedule_id)

    @classmethod
    def template(cls, template_id: str) -> str:
        return cls.TEMPLATE.format(template_id=template_id)

    @classmethod
    def template_versions(cls, template_id: str) -> str:
        return cls.TEMPLATE_VERSIONS.format(template_id=template_id)

    @classmethod
    def abtest(cls, test_id: str) -> str:
        return cls.ABTEST.format(test_id=test_id)

    @classmethod
    def abtest_active(cls, template_id: str) -> str:
        return cls.ABTEST_ACTIVE.format(template_id=template_id)

    @classmethod
    def abtest_events(cls, test_id: str) -> str:
        return cls.ABTEST_EVENTS.format(test_id=test_id)

    @classmethod
    def abtest_counts(cls, test_id: str) -> str:
        return cls.ABTEST_COUNTS.format(test_id=test_id)

    @classmethod
    def preferences(cls, user_id: str) -> str:
        return cls.PREFERENCES.format(user_id=user_id)

    @classmethod
    def user_contact(cls, user_id: str) -> str:
        return cls.USER_CONTACT.format(user_id=user_id)

    @classmethod
    def processed(cls, event_id: str) -> str:
        return cls.PROCESSED.format(event_id=event_id)

    @classmethod
    def digest_queue(cls, frequency: str, user_id: str) -> str:
        return cls.DIGEST_QUEUE.format(frequency=frequency, user_id=user_id)

    @classmethod
    def digest_users(cls, frequency: str) -> str:
        return cls.DIGEST_USERS.format(frequency=frequency)

    @classmethod
    def digest_run(cls, frequency: str, period: str) -> str:
        return cls.DIGEST_RUN.format(frequency=frequency, period=period)

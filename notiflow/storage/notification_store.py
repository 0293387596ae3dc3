"""Notification storage operations."""

from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import WatchError

from notiflow.models.common import to_timestamp, utcnow
from notiflow.models.notification import Notification
from notiflow.storage.redis_client import RedisKeys, get_redis


class NotificationStore:
    """Notification records and per-user indexes using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def next_group_order(self, user_id: str, category: str, group_id: str) -> int:
        """Reserve the next position inside a notification group.

        Args:
            user_id: Group owner
            category: Notification category
            group_id: Group key

        Returns:
            Strictly increasing order number, starting at 1
        """
        return await self.redis.incr(RedisKeys.group_order(user_id, category, group_id))

    async def create(self, notification: Notification) -> Notification:
        """Persist a new notification and index it for its user.

        Args:
            notification: Notification to store

        Returns:
            Stored notification
        """
        user_key = RedisKeys.user_notifications(notification.user_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(RedisKeys.notification(notification.notification_id), notification.model_dump_json())
            pipe.zadd(user_key, {notification.notification_id: to_timestamp(notification.created_at)})
            if not notification.read:
                pipe.sadd(RedisKeys.user_unread(notification.user_id), notification.notification_id)
            await pipe.execute()
        return notification

    async def get(self, notification_id: str) -> Notification | None:
        data = await self.redis.get(RedisKeys.notification(notification_id))
        if not data:
            return None
        return Notification.model_validate_json(data)

    async def get_many(self, notification_ids: list[str]) -> list[Notification]:
        """Load several notifications, skipping ids that no longer exist."""
        if not notification_ids:
            return []
        keys = [RedisKeys.notification(nid) for nid in notification_ids]
        rows = await self.redis.mget(keys)
        return [Notification.model_validate_json(row) for row in rows if row]

    async def _transition(
        self,
        notification_id: str,
        apply: Callable[[Notification], bool],
    ) -> tuple[Notification | None, bool]:
        """Apply a conditional change to a stored notification under WATCH.

        ``apply`` mutates the notification and returns False when there is
        nothing to change. A concurrent write to the record retries the
        read-modify-write, so each change is applied exactly once.

        Returns:
            The notification as stored afterwards (None if unknown) and
            whether this call changed it
        """
        key = RedisKeys.notification(notification_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        await pipe.unwatch()
                        return None, False
                    notification = Notification.model_validate_json(data)
                    if not apply(notification):
                        await pipe.unwatch()
                        return notification, False
                    pipe.multi()
                    pipe.set(key, notification.model_dump_json())
                    if notification.read:
                        pipe.srem(RedisKeys.user_unread(notification.user_id), notification_id)
                    await pipe.execute()
                    return notification, True
                except WatchError:
                    continue

    async def mark_read(self, notification_id: str) -> tuple[Notification | None, bool]:
        """Mark read once; the second of two concurrent calls reports no change."""

        def read(notification: Notification) -> bool:
            if notification.read:
                return False
            notification.read = True
            notification.read_at = utcnow()
            return True

        return await self._transition(notification_id, read)

    async def mark_dismissed(self, notification_id: str) -> tuple[Notification | None, bool]:
        def dismiss(notification: Notification) -> bool:
            if notification.dismissed:
                return False
            notification.dismissed = True
            return True

        return await self._transition(notification_id, dismiss)

    async def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        """List a user's notifications, newest first.

        Args:
            user_id: Recipient
            unread_only: Skip read notifications
            limit: Maximum number returned

        Returns:
            Notifications ordered by creation time descending
        """
        ids = await self.redis.zrevrange(RedisKeys.user_notifications(user_id), 0, -1)
        if unread_only:
            unread = await self.redis.smembers(RedisKeys.user_unread(user_id))
            ids = [nid for nid in ids if nid in unread]
        return await self.get_many(ids[:limit])

    async def unread_count(self, user_id: str) -> int:
        return await self.redis.scard(RedisKeys.user_unread(user_id))

"""Delivery record storage operations."""

from datetime import datetime

from redis.asyncio import Redis

from notiflow.models.common import to_timestamp
from notiflow.models.notification import DeliveryRecord
from notiflow.storage.redis_client import RedisKeys, get_redis


class DeliveryStore:
    """Append-only delivery records indexed by time, user and notification."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def append(self, record: DeliveryRecord) -> DeliveryRecord:
        score = to_timestamp(record.created_at)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(RedisKeys.delivery(record.record_id), record.model_dump_json())
            pipe.rpush(RedisKeys.delivery_by_notification(record.notification_id), record.record_id)
            pipe.zadd(RedisKeys.DELIVERY_INDEX, {record.record_id: score})
            pipe.zadd(RedisKeys.delivery_user_index(record.user_id), {record.record_id: score})
            if record.template_id:
                pipe.zadd(RedisKeys.delivery_template_index(record.template_id), {record.record_id: score})
            await pipe.execute()
        return record

    async def for_notification(self, notification_id: str) -> list[DeliveryRecord]:
        """All records of a notification in append order."""
        ids = await self.redis.lrange(RedisKeys.delivery_by_notification(notification_id), 0, -1)
        return await self._load(ids)

    async def query(
        self,
        user_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        template_id: str | None = None,
    ) -> list[DeliveryRecord]:
        """Records in a time range, optionally for one user or template.

        Args:
            user_id: Restrict to this user
            start_date: Inclusive lower bound
            end_date: Inclusive upper bound
            template_id: Restrict to notifications rendered from this template

        Returns:
            Matching records in chronological order
        """
        if template_id:
            key = RedisKeys.delivery_template_index(template_id)
        elif user_id:
            key = RedisKeys.delivery_user_index(user_id)
        else:
            key = RedisKeys.DELIVERY_INDEX
        low = to_timestamp(start_date) if start_date else "-inf"
        high = to_timestamp(end_date) if end_date else "+inf"
        ids = await self.redis.zrangebyscore(key, low, high)
        records = await self._load(ids)
        if template_id and user_id:
            records = [record for record in records if record.user_id == user_id]
        return records

    async def _load(self, record_ids: list[str]) -> list[DeliveryRecord]:
        if not record_ids:
            return []
        rows = await self.redis.mget([RedisKeys.delivery(rid) for rid in record_ids])
        return [DeliveryRecord.model_validate_json(row) for row in rows if row]

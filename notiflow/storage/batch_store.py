"""Batching rule and notification batch storage."""

from datetime import datetime

from redis.asyncio import Redis
from redis.exceptions import WatchError

from notiflow.models.batch import BatchingRule, BatchStatus, NotificationBatch
from notiflow.models.common import to_timestamp
from notiflow.storage.redis_client import RedisKeys, compare_and_set, get_redis


def rule_field(template_type: str | None, category: str | None) -> str:
    return f"{template_type or '*'}:{category or '*'}"


class BatchStore:
    """Batching rules and batches using Redis.

    A batch is a hash with ``data`` (model JSON) plus ``status`` and ``count``
    fields, which are the authoritative values and are updated atomically.
    """

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    # Rules

    async def list_rules(self, user_id: str) -> list[BatchingRule]:
        rows = await self.redis.hvals(RedisKeys.batch_rules(user_id))
        return [BatchingRule.model_validate_json(row) for row in rows]

    async def get_rule(
        self,
        user_id: str,
        template_type: str | None,
        category: str | None,
    ) -> BatchingRule | None:
        data = await self.redis.hget(RedisKeys.batch_rules(user_id), rule_field(template_type, category))
        return BatchingRule.model_validate_json(data) if data else None

    async def save_rule(self, rule: BatchingRule) -> BatchingRule:
        await self.redis.hset(
            RedisKeys.batch_rules(rule.user_id),
            rule_field(rule.template_type, rule.category),
            rule.model_dump_json(),
        )
        return rule

    # Batches

    async def get(self, batch_id: str) -> NotificationBatch | None:
        return self._from_hash(await self.redis.hgetall(RedisKeys.batch(batch_id)))

    async def members(self, batch_id: str) -> list[str]:
        return await self.redis.lrange(RedisKeys.batch_members(batch_id), 0, -1)

    async def join_or_open(
        self,
        candidate: NotificationBatch,
        notification_id: str,
        now: datetime,
    ) -> NotificationBatch:
        """Add a notification to the open batch for its key, or open ``candidate``.

        The open-batch pointer and the batch hash are watched, so two
        concurrent joins can never push a batch past ``max_batch_size``.

        Args:
            candidate: Batch to open when no open batch accepts members
            notification_id: Member to append
            now: Reference time for the window check

        Returns:
            The batch the notification joined, with its updated count
        """
        open_key = RedisKeys.batch_open(
            candidate.user_id, candidate.template_type, candidate.category, candidate.group_id
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(open_key)
                    current = None
                    open_id = await pipe.get(open_key)
                    if open_id:
                        await pipe.watch(RedisKeys.batch(open_id))
                        current = self._from_hash(await pipe.hgetall(RedisKeys.batch(open_id)))

                    pipe.multi()
                    if current and current.accepts(now):
                        batch = current
                        batch.count += 1
                        pipe.hincrby(RedisKeys.batch(batch.batch_id), "count", 1)
                    else:
                        batch = candidate.model_copy()
                        batch.count = 1
                        pipe.hset(RedisKeys.batch(batch.batch_id), mapping=self._to_hash(batch))
                        pipe.set(open_key, batch.batch_id)
                        pipe.zadd(RedisKeys.BATCH_PENDING, {batch.batch_id: to_timestamp(batch.scheduled_for)})
                    pipe.rpush(RedisKeys.batch_members(batch.batch_id), notification_id)
                    if batch.count >= batch.max_batch_size:
                        pipe.sadd(RedisKeys.BATCH_FULL, batch.batch_id)
                    await pipe.execute()
                    return batch
                except WatchError:
                    continue

    async def due_ids(self, now: datetime) -> list[str]:
        """Batches whose window elapsed or that are flagged full."""
        scheduled = await self.redis.zrangebyscore(RedisKeys.BATCH_PENDING, "-inf", to_timestamp(now))
        full = await self.redis.smembers(RedisKeys.BATCH_FULL)
        return list(dict.fromkeys([*scheduled, *sorted(full)]))

    async def claim(self, batch_id: str) -> bool:
        """Move a batch from pending to processing; False if someone else did."""
        claimed = await compare_and_set(
            self.redis,
            RedisKeys.batch(batch_id),
            "status",
            BatchStatus.PENDING.value,
            {"status": BatchStatus.PROCESSING.value},
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(RedisKeys.BATCH_PENDING, batch_id)
            pipe.srem(RedisKeys.BATCH_FULL, batch_id)
            await pipe.execute()
        return claimed

    async def save(self, batch: NotificationBatch) -> NotificationBatch:
        """Write the batch's final state (status, sent_at, error, metadata)."""
        mapping = self._to_hash(batch)
        mapping.pop("count")
        await self.redis.hset(RedisKeys.batch(batch.batch_id), mapping=mapping)
        return batch

    @staticmethod
    def _to_hash(batch: NotificationBatch) -> dict[str, str]:
        return {
            "data": batch.model_dump_json(),
            "status": batch.status.value,
            "count": str(batch.count),
        }

    @staticmethod
    def _from_hash(data: dict[str, str]) -> NotificationBatch | None:
        if not data or "data" not in data:
            return None
        batch = NotificationBatch.model_validate_json(data["data"])
        batch.status = BatchStatus(data.get("status", batch.status.value))
        batch.count = int(data.get("count", batch.count))
        return batch

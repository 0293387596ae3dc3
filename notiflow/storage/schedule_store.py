"""Scheduled notification storage."""

from datetime import datetime

from redis.asyncio import Redis

from notiflow.models.common import to_timestamp
from notiflow.models.schedule import ScheduledNotification, ScheduleStatus
from notiflow.storage.redis_client import RedisKeys, compare_and_set, get_redis


class ScheduleStore:
    """Scheduled notifications using Redis.

    Pending schedules are indexed in a sorted set scored by ``next_run_at``.
    """

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(self, schedule: ScheduledNotification) -> ScheduledNotification:
        """Create or overwrite a schedule and refresh the due index.

        Args:
            schedule: Schedule to store

        Returns:
            Stored schedule
        """
        key = RedisKeys.schedule(schedule.schedule_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={"data": schedule.model_dump_json(), "status": schedule.status.value})
            pipe.sadd(RedisKeys.SCHEDULE_ALL, schedule.schedule_id)
            if schedule.status == ScheduleStatus.PENDING:
                pipe.zadd(RedisKeys.SCHEDULE_DUE, {schedule.schedule_id: to_timestamp(schedule.next_run_at)})
            else:
                pipe.zrem(RedisKeys.SCHEDULE_DUE, schedule.schedule_id)
            await pipe.execute()
        return schedule

    async def finish_run(self, schedule: ScheduledNotification) -> bool:
        """Store the outcome of a claimed run unless the schedule was deleted meanwhile.

        Returns:
            False if the schedule no longer exists
        """
        if not await self.redis.sismember(RedisKeys.SCHEDULE_ALL, schedule.schedule_id):
            return False
        await self.save(schedule)
        return True

    async def get(self, schedule_id: str) -> ScheduledNotification | None:
        data = await self.redis.hgetall(RedisKeys.schedule(schedule_id))
        if not data or "data" not in data:
            return None
        schedule = ScheduledNotification.model_validate_json(data["data"])
        schedule.status = ScheduleStatus(data.get("status", schedule.status.value))
        return schedule

    async def delete(self, schedule_id: str) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(RedisKeys.SCHEDULE_ALL, schedule_id)
            pipe.zrem(RedisKeys.SCHEDULE_DUE, schedule_id)
            pipe.delete(RedisKeys.schedule(schedule_id))
            removed, _, _ = await pipe.execute()
        return bool(removed)

    async def list_all(self, status: ScheduleStatus | None = None) -> list[ScheduledNotification]:
        schedules = []
        for schedule_id in sorted(await self.redis.smembers(RedisKeys.SCHEDULE_ALL)):
            schedule = await self.get(schedule_id)
            if schedule and (status is None or schedule.status == status):
                schedules.append(schedule)
        schedules.sort(key=lambda s: s.next_run_at)
        return schedules

    async def due_ids(self, now: datetime) -> list[str]:
        return await self.redis.zrangebyscore(RedisKeys.SCHEDULE_DUE, "-inf", to_timestamp(now))

    async def claim(self, schedule_id: str) -> bool:
        """Move a schedule from pending to processing; False if already taken."""
        claimed = await compare_and_set(
            self.redis,
            RedisKeys.schedule(schedule_id),
            "status",
            ScheduleStatus.PENDING.value,
            {"status": ScheduleStatus.PROCESSING.value},
        )
        if claimed:
            await self.redis.zrem(RedisKeys.SCHEDULE_DUE, schedule_id)
        return claimed

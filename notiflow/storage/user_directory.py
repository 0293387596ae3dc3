"""User directory storage."""

from redis.asyncio import Redis

from notiflow.models.notification import UserContact
from notiflow.storage.redis_client import RedisKeys, get_redis


class UserDirectory:
    """Contact details and attributes of notifiable users."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def upsert(self, contact: UserContact) -> UserContact:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(RedisKeys.user_contact(contact.user_id), contact.model_dump_json())
            pipe.sadd(RedisKeys.USER_ALL, contact.user_id)
            await pipe.execute()
        return contact

    async def get(self, user_id: str) -> UserContact | None:
        data = await self.redis.get(RedisKeys.user_contact(user_id))
        return UserContact.model_validate_json(data) if data else None

    async def get_many(self, user_ids: list[str]) -> dict[str, UserContact]:
        if not user_ids:
            return {}
        rows = await self.redis.mget([RedisKeys.user_contact(uid) for uid in user_ids])
        contacts = [UserContact.model_validate_json(row) for row in rows if row]
        return {contact.user_id: contact for contact in contacts}

    async def list_all(self) -> list[UserContact]:
        ids = sorted(await self.redis.smembers(RedisKeys.USER_ALL))
        return list((await self.get_many(ids)).values())

    async def delete(self, user_id: str) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(RedisKeys.user_contact(user_id))
            pipe.srem(RedisKeys.USER_ALL, user_id)
            removed, _ = await pipe.execute()
        return bool(removed)

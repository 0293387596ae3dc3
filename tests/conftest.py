"""Pytest configuration and fixtures."""

import asyncio
import random
from typing import AsyncIterator

import fakeredis
import pytest
import pytest_asyncio

from notiflow.core.config import Settings
from notiflow.models.common import Channel
from notiflow.models.notification import ChannelOutcome, ChannelPayload, DeliveryStatus, UserContact
from notiflow.notification.ab_testing import VariantSelector
from notiflow.notification.channels.base import NotificationChannel
from notiflow.notification.orchestrator import NotificationOrchestrator, create_orchestrator
from notiflow.storage.ab_test_store import ABTestStore


class FakeChannel(NotificationChannel):
    """In-memory channel sender recording every send."""

    def __init__(
        self,
        channel: Channel,
        status: DeliveryStatus = DeliveryStatus.SENT,
        error: Exception | None = None,
        delay: float = 0,
    ):
        self._channel = channel
        self.status = status
        self.error = error
        self.delay = delay
        self.sent: list[tuple[str, ChannelPayload]] = []
        self.closed = False

    @property
    def channel_type(self) -> Channel:
        return self._channel

    async def send(self, address: str, payload: ChannelPayload) -> ChannelOutcome:
        self.sent.append((address, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if self.status == DeliveryStatus.FAILED:
            return ChannelOutcome(status=self.status, error="rejected")
        return ChannelOutcome(status=self.status)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, with roomy rate limits."""
    return Settings(
        _env_file=None,
        app_url="https://app.example.com",
        rate_limit_per_minute=50,
        rate_limit_per_hour=500,
        rate_limit_per_day=1000,
        channel_timeout_seconds=0.5,
        digest_hour=8,
    )


@pytest_asyncio.fixture
async def redis() -> AsyncIterator[fakeredis.FakeAsyncRedis]:
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def email_channel() -> FakeChannel:
    return FakeChannel(Channel.EMAIL)


@pytest.fixture
def push_channel() -> FakeChannel:
    return FakeChannel(Channel.PUSH, status=DeliveryStatus.DELIVERED)


@pytest.fixture
def orchestrator(
    redis: fakeredis.FakeAsyncRedis,
    settings: Settings,
    email_channel: FakeChannel,
    push_channel: FakeChannel,
) -> NotificationOrchestrator:
    orchestrator = create_orchestrator(
        redis,
        channels={Channel.EMAIL: email_channel, Channel.PUSH: push_channel},
        settings=settings,
    )
    orchestrator.variants = VariantSelector(ABTestStore(redis), rng=random.Random(7))
    return orchestrator


@pytest_asyncio.fixture
async def users(orchestrator: NotificationOrchestrator) -> list[UserContact]:
    """Directory entries for alice, bob and carol."""
    contacts = [
        UserContact(
            user_id="alice",
            name="Alice",
            email="alice@example.com",
            push_endpoint="https://push.example.com/alice",
            attributes={"role": "admin", "plan": "pro", "seats": 12},
        ),
        UserContact(
            user_id="bob",
            name="Bob",
            email="bob@example.com",
            push_endpoint="https://push.example.com/bob",
            attributes={"role": "member", "plan": "free", "seats": 1},
        ),
        UserContact(
            user_id="carol",
            name="Carol",
            email="carol@example.com",
            attributes={"role": "member", "plan": "pro", "seats": 3},
        ),
    ]
    for contact in contacts:
        await orchestrator.directory.upsert(contact)
    return contacts


@pytest.fixture
def task_assigned_event() -> dict:
    """Queue message for a task assignment by alice."""
    return {
        "event_id": "evt_test_001",
        "event_type": "task.assigned",
        "recipients": ["alice", "bob"],
        "url": "/projects/p1/tasks/t1",
        "data": {
            "actor": {"id": "alice", "name": "Alice"},
            "project": {"id": "p1", "name": "Apollo"},
            "action": "assigned",
            "task": {"id": "t1", "title": "Write launch notes"},
            "assignee": {"id": "bob", "name": "Bob"},
        },
    }

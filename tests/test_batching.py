"""Tests for batch aggregation and the batch sweep."""

from datetime import datetime, timedelta, timezone

import pytest

from notiflow.core.errors import NotFoundError, ValidationFailed
from notiflow.models.batch import BatchingRuleUpdate, BatchStatus, NotificationBatch
from notiflow.models.common import NotificationCategory
from notiflow.models.notification import Notification
from notiflow.notification.batching import BatchAggregator
from notiflow.storage.batch_store import BatchStore
from notiflow.storage.notification_store import NotificationStore

NOW = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


class FakeSender:
    """Batch sender that records what the sweep asked for."""

    def __init__(self, fail_digest: bool = False):
        self.fail_digest = fail_digest
        self.digests: list[tuple[NotificationBatch, list[Notification]]] = []
        self.individual: list[str] = []

    async def send_batch_digest(self, batch: NotificationBatch, members: list[Notification]) -> Notification:
        if self.fail_digest:
            raise RuntimeError("digest refused")
        self.digests.append((batch, members))
        return Notification(
            type=batch.template_type,
            title="digest",
            message=f"{len(members)} notifications",
            user_id=batch.user_id,
        )

    async def send_individually(self, notification: Notification) -> None:
        self.individual.append(notification.notification_id)


@pytest.fixture
def notifications(redis) -> NotificationStore:
    return NotificationStore(redis)


@pytest.fixture
def aggregator(redis, notifications) -> BatchAggregator:
    return BatchAggregator(BatchStore(redis), notifications)


async def stored(
    notifications: NotificationStore,
    type: str = "task.created",
    group_id: str | None = "task_p1",
    user_id: str = "bob",
) -> Notification:
    notification = Notification(
        type=type,
        category=NotificationCategory.TASK,
        title="New Task Created",
        message="Alice created a task",
        user_id=user_id,
        group_id=group_id,
    )
    return await notifications.create(notification)


async def enqueue_many(aggregator, notifications, count: int, now: datetime = NOW, **kwargs) -> list[Notification]:
    created = []
    for _ in range(count):
        notification = await stored(notifications, **kwargs)
        assert await aggregator.enqueue(notification, now)
        created.append(notification)
    return created


@pytest.mark.asyncio
async def test_enqueue_without_rule_is_not_batched(aggregator, notifications) -> None:
    notification = await stored(notifications)

    assert await aggregator.enqueue(notification, NOW) is False


@pytest.mark.asyncio
async def test_disabled_rule_is_ignored(aggregator, notifications) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(enabled=False))

    assert await aggregator.enqueue(await stored(notifications), NOW) is False


@pytest.mark.asyncio
async def test_most_specific_rule_wins(aggregator) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(batch_window_seconds=600))
    await aggregator.update_rule("bob", BatchingRuleUpdate(category="task", batch_window_seconds=300))
    await aggregator.update_rule("bob", BatchingRuleUpdate(template_type="task.created", batch_window_seconds=120))
    await aggregator.update_rule(
        "bob",
        BatchingRuleUpdate(template_type="task.created", category="task", batch_window_seconds=60),
    )

    exact = await aggregator.find_matching_rule("bob", "task.created", "task")
    type_only = await aggregator.find_matching_rule("bob", "task.created", "project")
    category_only = await aggregator.find_matching_rule("bob", "task.assigned", "task")
    fallback = await aggregator.find_matching_rule("bob", "member.joined", "member")

    assert exact.batch_window_seconds == 60
    assert type_only.batch_window_seconds == 120
    assert category_only.batch_window_seconds == 300
    assert fallback.batch_window_seconds == 600


@pytest.mark.asyncio
async def test_notifications_within_window_share_a_batch(aggregator, notifications, redis) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(batch_window_seconds=300, max_batch_size=10))

    created = await enqueue_many(aggregator, notifications, 3)

    store = BatchStore(redis)
    due = await store.due_ids(NOW + timedelta(seconds=300))
    assert len(due) == 1
    batch = await aggregator.get_batch(due[0])
    assert batch.count == 3
    assert batch.scheduled_for == NOW + timedelta(seconds=300)
    members = await aggregator.get_batch_members(batch.batch_id)
    assert [m.notification_id for m in members] == [n.notification_id for n in created]


@pytest.mark.asyncio
async def test_groups_are_batched_separately(aggregator, notifications, redis) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate())

    await enqueue_many(aggregator, notifications, 1, group_id="task_p1")
    await enqueue_many(aggregator, notifications, 1, group_id="task_p2")

    due = await BatchStore(redis).due_ids(NOW + timedelta(hours=1))
    assert len(due) == 2


@pytest.mark.asyncio
async def test_full_batch_is_due_immediately(aggregator, notifications, redis) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(min_batch_size=1, max_batch_size=2))

    await enqueue_many(aggregator, notifications, 3)

    store = BatchStore(redis)
    due_now = await store.due_ids(NOW)
    assert len(due_now) == 1
    full = await store.get(due_now[0])
    assert full.count == 2
    assert len(await store.due_ids(NOW + timedelta(hours=1))) == 2


@pytest.mark.asyncio
async def test_elapsed_window_opens_new_batch(aggregator, notifications, redis) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(batch_window_seconds=60))

    await enqueue_many(aggregator, notifications, 1, now=NOW)
    await enqueue_many(aggregator, notifications, 1, now=NOW + timedelta(seconds=61))

    due = await BatchStore(redis).due_ids(NOW + timedelta(hours=1))
    assert len(due) == 2


@pytest.mark.asyncio
async def test_batch_not_due_before_window_ends(aggregator, notifications) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(batch_window_seconds=300))
    await enqueue_many(aggregator, notifications, 2)
    sender = FakeSender()

    summary = await aggregator.sweep(sender, NOW + timedelta(seconds=299))

    assert summary == {"sent": 0, "individual": 0, "failed": 0}
    assert sender.digests == []


@pytest.mark.asyncio
async def test_small_batch_is_sent_individually(aggregator, notifications, redis) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(min_batch_size=3))
    created = await enqueue_many(aggregator, notifications, 2)
    sender = FakeSender()
    [batch_id] = await BatchStore(redis).due_ids(NOW + timedelta(seconds=300))

    summary = await aggregator.sweep(sender, NOW + timedelta(seconds=300))

    assert summary["individual"] == 1
    assert sender.digests == []
    assert sender.individual == [n.notification_id for n in created]
    batch = await aggregator.get_batch(batch_id)
    assert batch.status == BatchStatus.SENT
    assert batch.metadata["delivered_individually"] is True


@pytest.mark.asyncio
async def test_large_batch_sends_one_digest(aggregator, notifications, redis) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(min_batch_size=2))
    await enqueue_many(aggregator, notifications, 3)
    sender = FakeSender()
    [batch_id] = await BatchStore(redis).due_ids(NOW + timedelta(seconds=300))

    summary = await aggregator.sweep(sender, NOW + timedelta(seconds=300))

    assert summary["sent"] == 1
    assert len(sender.digests) == 1
    digest_batch, members = sender.digests[0]
    assert digest_batch.count == 3
    assert len(members) == 3
    batch = await aggregator.get_batch(batch_id)
    assert batch.status == BatchStatus.SENT
    assert batch.sent_at == NOW + timedelta(seconds=300)
    assert "digest_notification_id" in batch.metadata


@pytest.mark.asyncio
async def test_failed_digest_falls_back_to_individual_sends(aggregator, notifications, redis) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(min_batch_size=2))
    created = await enqueue_many(aggregator, notifications, 2)
    sender = FakeSender(fail_digest=True)
    [batch_id] = await BatchStore(redis).due_ids(NOW + timedelta(seconds=300))

    summary = await aggregator.sweep(sender, NOW + timedelta(seconds=300))

    assert summary["failed"] == 1
    assert sender.individual == [n.notification_id for n in created]
    batch = await aggregator.get_batch(batch_id)
    assert batch.status == BatchStatus.FAILED
    assert batch.error == "digest refused"


@pytest.mark.asyncio
async def test_batch_is_processed_once(aggregator, notifications, redis) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(min_batch_size=1))
    await enqueue_many(aggregator, notifications, 1)
    [batch_id] = await BatchStore(redis).due_ids(NOW + timedelta(seconds=300))
    sender = FakeSender()

    first = await aggregator.process_batch(batch_id, sender, NOW + timedelta(seconds=300))
    second = await aggregator.process_batch(batch_id, sender, NOW + timedelta(seconds=300))

    assert first == "sent"
    assert second == "skipped"
    assert len(sender.digests) == 1


@pytest.mark.asyncio
async def test_update_rule_rejects_inconsistent_sizes(aggregator) -> None:
    with pytest.raises(ValidationFailed):
        await aggregator.update_rule("bob", BatchingRuleUpdate(min_batch_size=5, max_batch_size=2))


@pytest.mark.asyncio
async def test_update_rule_merges_into_existing(aggregator) -> None:
    await aggregator.update_rule("bob", BatchingRuleUpdate(category="task", max_batch_size=20))
    rule = await aggregator.update_rule("bob", BatchingRuleUpdate(category="task", min_batch_size=4))

    assert rule.max_batch_size == 20
    assert rule.min_batch_size == 4
    assert len(await aggregator.get_rules("bob")) == 1


@pytest.mark.asyncio
async def test_unknown_batch(aggregator) -> None:
    with pytest.raises(NotFoundError):
        await aggregator.get_batch("bat_missing")

"""Tests for end-to-end event delivery through the orchestrator."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from notiflow.core.errors import ChannelDeliveryFailed, NotificationNotFound
from notiflow.messaging.consumer import parse_event
from notiflow.models.ab_test import ABTestStatus, Variant
from notiflow.models.batch import BatchingRuleUpdate
from notiflow.models.common import Channel, NotificationCategory, NotificationPriority, utcnow
from notiflow.models.notification import DeliveryStatus
from notiflow.models.preference import DigestFrequency, PreferenceUpdate
from notiflow.models.rate_limit import RateLimitConfig
from notiflow.models.template import TemplateVariable
from notiflow.notification.orchestrator import NotificationOrchestrator, create_orchestrator


def statuses(records) -> dict[Channel, DeliveryStatus]:
    return {r.channel: r.status for r in records}


def with_id(event: dict, event_id: str) -> dict:
    return {**event, "event_id": event_id}


async def create_report_template(orchestrator: NotificationOrchestrator):
    return await orchestrator.templates.create_template(
        name="Report ready",
        type="report.ready",
        title="Report {{ reportName }}",
        body="{{ actorName }} shared {{ reportName }}",
        variables={
            "reportName": TemplateVariable(),
            "actorName": TemplateVariable(required=False, default="Someone"),
        },
        metadata={"category": "project", "priority": "high"},
    )


def report_event(template_id: str, recipients=("bob",)) -> dict:
    return {
        "event_type": "report.ready",
        "template_id": template_id,
        "recipients": list(recipients),
        "data": {"actor": {"id": "alice", "name": "Alice"}, "reportName": "Q2"},
    }


@pytest.mark.asyncio
async def test_deliver_skips_actor_and_sends_every_channel(
    orchestrator, users, task_assigned_event, email_channel, push_channel
) -> None:
    created = await orchestrator.deliver(parse_event(task_assigned_event))

    assert [n.user_id for n in created] == ["bob"]
    notification = created[0]
    assert notification.title == "Task Assigned to You"
    assert notification.message == 'Alice assigned you task "Write launch notes" in Apollo'
    assert notification.category == NotificationCategory.TASK
    assert notification.priority == NotificationPriority.HIGH
    assert notification.group_id == "task_p1"
    assert notification.group_order == 1
    assert notification.metadata["taskId"] == "t1"
    assert notification.metadata["event_id"] == "evt_test_001"

    records = await orchestrator.tracker.get_records(notification.notification_id)
    assert statuses(records) == {
        Channel.APP: DeliveryStatus.SENT,
        Channel.EMAIL: DeliveryStatus.SENT,
        Channel.PUSH: DeliveryStatus.DELIVERED,
    }
    assert [address for address, _ in email_channel.sent] == ["bob@example.com"]
    assert [address for address, _ in push_channel.sent] == ["https://push.example.com/bob"]


@pytest.mark.asyncio
async def test_relative_url_is_made_absolute(orchestrator, users, task_assigned_event, email_channel) -> None:
    await orchestrator.deliver(parse_event(task_assigned_event))

    _, payload = email_channel.sent[0]
    assert payload.url == "https://app.example.com/projects/p1/tasks/t1"
    assert payload.metadata["type"] == "task.assigned"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [RuntimeError("gateway down"), ChannelDeliveryFailed("push", "gateway down")],
    ids=["unexpected", "provider"],
)
async def test_failing_channel_does_not_affect_the_other(
    orchestrator, users, task_assigned_event, email_channel, push_channel, error
) -> None:
    push_channel.error = error

    [notification] = await orchestrator.deliver(parse_event(task_assigned_event))

    records = await orchestrator.tracker.get_records(notification.notification_id)
    assert sorted((r.channel.value, r.status.value) for r in records) == [
        ("app", "sent"),
        ("email", "sent"),
        ("push", "failed"),
    ]
    [push] = [r for r in records if r.channel == Channel.PUSH]
    assert push.error == "gateway down"
    assert len(email_channel.sent) == 1


@pytest.mark.asyncio
async def test_slow_channel_times_out(orchestrator, users, task_assigned_event, push_channel) -> None:
    push_channel.delay = 2

    [notification] = await orchestrator.deliver(parse_event(task_assigned_event))

    records = await orchestrator.tracker.get_records(notification.notification_id)
    push = next(r for r in records if r.channel == Channel.PUSH)
    assert push.status == DeliveryStatus.FAILED
    assert push.error == "Timed out after 0.5s"
    assert statuses(records)[Channel.EMAIL] == DeliveryStatus.SENT


@pytest.mark.asyncio
async def test_missing_sender_records_failure(redis, settings, users, task_assigned_event, email_channel) -> None:
    orchestrator = create_orchestrator(redis, channels={Channel.EMAIL: email_channel}, settings=settings)

    [notification] = await orchestrator.deliver(parse_event(task_assigned_event))

    records = await orchestrator.tracker.get_records(notification.notification_id)
    push = next(r for r in records if r.channel == Channel.PUSH)
    assert push.status == DeliveryStatus.FAILED
    assert push.error == "No sender configured for push"
    assert len(email_channel.sent) == 1


@pytest.mark.asyncio
async def test_group_order_increments(orchestrator, users, task_assigned_event) -> None:
    first = await orchestrator.deliver(parse_event(with_id(task_assigned_event, "evt_1")))
    second = await orchestrator.deliver(parse_event(with_id(task_assigned_event, "evt_2")))

    assert first[0].group_order == 1
    assert second[0].group_order == 2


@pytest.mark.asyncio
async def test_unknown_event_type_creates_nothing(orchestrator, users) -> None:
    event = parse_event(
        {"event_type": "billing.failed", "recipients": ["bob"], "data": {"actor": {"id": "system"}}}
    )

    assert await orchestrator.deliver(event) == []
    assert await orchestrator.unread_count("bob") == 0


@pytest.mark.asyncio
async def test_disabled_preference_suppresses(orchestrator, users, task_assigned_event, email_channel) -> None:
    await orchestrator.preferences.update_preference("bob", "task.assigned", PreferenceUpdate(enabled=False))

    assert await orchestrator.deliver(parse_event(task_assigned_event)) == []
    assert email_channel.sent == []


@pytest.mark.asyncio
async def test_email_opt_out_still_sends_push(
    orchestrator, users, task_assigned_event, email_channel, push_channel
) -> None:
    await orchestrator.preferences.update_preference("bob", "task.assigned", PreferenceUpdate(email=False))

    [notification] = await orchestrator.deliver(parse_event(task_assigned_event))

    assert email_channel.sent == []
    assert len(push_channel.sent) == 1
    records = await orchestrator.tracker.get_records(notification.notification_id)
    assert Channel.EMAIL not in statuses(records)


@pytest.mark.asyncio
async def test_in_app_rate_limit_drops_recipient(orchestrator, users, task_assigned_event) -> None:
    await orchestrator.rate_limiter.update_policy(
        "bob", Channel.APP, RateLimitConfig(max_per_minute=1, max_per_hour=1, max_per_day=1)
    )

    first = await orchestrator.deliver(parse_event(with_id(task_assigned_event, "evt_1")))
    second = await orchestrator.deliver(parse_event(with_id(task_assigned_event, "evt_2")))

    assert len(first) == 1
    assert second == []


@pytest.mark.asyncio
async def test_criteria_recipients(orchestrator, users, task_assigned_event, email_channel, push_channel) -> None:
    event = parse_event({**task_assigned_event, "recipients": {"attributes": {"plan": "pro"}}})

    created = await orchestrator.deliver(event)

    # alice matches but is the actor; carol has no push endpoint
    assert [n.user_id for n in created] == ["carol"]
    assert [address for address, _ in email_channel.sent] == ["carol@example.com"]
    assert push_channel.sent == []


@pytest.mark.asyncio
async def test_stored_template_rendering(orchestrator, users) -> None:
    template = await create_report_template(orchestrator)

    [notification] = await orchestrator.deliver(parse_event(report_event(template.template_id)))

    assert notification.title == "Report Q2"
    assert notification.message == "Alice shared Q2"
    assert notification.category == NotificationCategory.PROJECT
    assert notification.priority == NotificationPriority.HIGH
    assert notification.metadata["template_id"] == template.template_id
    assert notification.metadata["template_version"] == 1


@pytest.mark.asyncio
async def test_active_ab_test_supplies_content(orchestrator, users) -> None:
    template = await create_report_template(orchestrator)
    test = await orchestrator.variants.create_test(
        "Report subject",
        template.template_id,
        [
            Variant(variant_id="short", title="{{ reportName }}", body="Open {{ reportName }}"),
            Variant(variant_id="long", title="Your report {{ reportName }}", body="Read {{ reportName }} now"),
        ],
        start_date=utcnow() - timedelta(minutes=1),
    )
    await orchestrator.variants.update_test(test.test_id, status=ABTestStatus.ACTIVE)

    [notification] = await orchestrator.deliver(parse_event(report_event(template.template_id)))

    assert notification.ab_test is not None
    test_id, variant_id = notification.ab_test
    assert test_id == test.test_id
    expected_title = {"short": "Q2", "long": "Your report Q2"}[variant_id]
    assert notification.title == expected_title

    await orchestrator.mark_clicked(notification.notification_id)

    metrics = (await orchestrator.variants.get_metrics(test.test_id)).metrics[variant_id]
    assert (metrics.sent, metrics.delivered, metrics.read, metrics.clicked) == (1, 1, 1, 1)


@pytest.mark.asyncio
async def test_inactive_template_blocks_ab_variants(orchestrator, users, email_channel) -> None:
    template = await create_report_template(orchestrator)
    test = await orchestrator.variants.create_test(
        "Report subject",
        template.template_id,
        [
            Variant(variant_id="short", title="{{ reportName }}", body="Open {{ reportName }}"),
            Variant(variant_id="long", title="Your report {{ reportName }}", body="Read {{ reportName }} now"),
        ],
        start_date=utcnow() - timedelta(minutes=1),
    )
    await orchestrator.variants.update_test(test.test_id, status=ABTestStatus.ACTIVE)
    await orchestrator.templates.update_template(template.template_id, is_active=False)

    created = await orchestrator.deliver(parse_event(report_event(template.template_id)))

    assert created == []
    assert email_channel.sent == []
    assert (await orchestrator.variants.get_metrics(test.test_id)).metrics["short"].sent == 0


@pytest.mark.asyncio
async def test_batched_notifications_go_out_as_one_digest(
    orchestrator, users, task_assigned_event, email_channel
) -> None:
    await orchestrator.batching.update_rule("bob", BatchingRuleUpdate(min_batch_size=2, batch_window_seconds=60))

    for event_id in ("evt_1", "evt_2"):
        await orchestrator.deliver(parse_event(with_id(task_assigned_event, event_id)))
    assert email_channel.sent == []
    assert await orchestrator.unread_count("bob") == 2

    summary = await orchestrator.schedule_batch_processing(utcnow() + timedelta(seconds=120))

    assert summary["sent"] == 1
    [(address, payload)] = email_channel.sent
    assert address == "bob@example.com"
    assert payload.title == "2 new task notifications"
    assert await orchestrator.unread_count("bob") == 3


@pytest.mark.asyncio
async def test_inbox_read_click_and_dismiss(orchestrator, users, task_assigned_event) -> None:
    [notification] = await orchestrator.deliver(parse_event(task_assigned_event))
    assert await orchestrator.unread_count("bob") == 1

    read = await orchestrator.mark_read(notification.notification_id)
    await orchestrator.mark_read(notification.notification_id)
    await orchestrator.mark_clicked(notification.notification_id, Channel.EMAIL)
    await orchestrator.dismiss(notification.notification_id)

    assert read.read
    assert await orchestrator.unread_count("bob") == 0
    records = await orchestrator.tracker.get_records(notification.notification_id)
    read_records = [r for r in records if r.metadata.get("read")]
    assert len(read_records) == 1
    assert read_records[0].status == DeliveryStatus.DELIVERED
    assert any(r.channel == Channel.EMAIL and r.status == DeliveryStatus.CLICKED for r in records)
    assert records[-1].status == DeliveryStatus.DISMISSED

    with pytest.raises(NotificationNotFound):
        await orchestrator.mark_read("ntf_missing")


@pytest.mark.asyncio
async def test_concurrent_reads_record_once(orchestrator, users, task_assigned_event) -> None:
    [notification] = await orchestrator.deliver(parse_event(task_assigned_event))

    await asyncio.gather(*(orchestrator.mark_read(notification.notification_id) for _ in range(3)))

    records = await orchestrator.tracker.get_records(notification.notification_id)
    assert len([r for r in records if r.metadata.get("read")]) == 1
    assert await orchestrator.unread_count("bob") == 0


@pytest.mark.asyncio
async def test_concurrent_read_and_dismiss_keep_both_flags(orchestrator, users, task_assigned_event) -> None:
    [notification] = await orchestrator.deliver(parse_event(task_assigned_event))

    await asyncio.gather(
        orchestrator.mark_read(notification.notification_id),
        orchestrator.dismiss(notification.notification_id),
    )
    await orchestrator.dismiss(notification.notification_id)

    stored = await orchestrator.notifications.get(notification.notification_id)
    assert stored.read and stored.dismissed
    records = await orchestrator.tracker.get_records(notification.notification_id)
    assert len([r for r in records if r.status == DeliveryStatus.DISMISSED]) == 1


@pytest.mark.asyncio
async def test_digest_defers_email_until_digest_run(
    orchestrator, users, task_assigned_event, email_channel, push_channel
) -> None:
    await orchestrator.preferences.update_preference(
        "bob", "task.assigned", PreferenceUpdate(digest_frequency=DigestFrequency.DAILY)
    )
    for event_id in ("evt_1", "evt_2"):
        await orchestrator.deliver(parse_event(with_id(task_assigned_event, event_id)))

    assert email_channel.sent == []
    assert len(push_channel.sent) == 2

    before_hour = datetime(2024, 6, 3, 7, 0, tzinfo=timezone.utc)
    assert (await orchestrator.process_digests(before_hour))["daily"] == 0

    run_at = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)
    assert (await orchestrator.process_digests(run_at))["daily"] == 1
    assert (await orchestrator.process_digests(run_at))["daily"] == 0

    [(address, payload)] = email_channel.sent
    assert address == "bob@example.com"
    assert payload.title == "Your daily notification digest"
    assert payload.metadata["count"] == 2


@pytest.mark.asyncio
async def test_close_closes_channels(orchestrator, email_channel, push_channel) -> None:
    await orchestrator.close()

    assert email_channel.closed and push_channel.closed

"""Tests for queue message parsing and idempotent event handling."""

import pytest
from pydantic import ValidationError

from notiflow.messaging.consumer import parse_event
from notiflow.messaging.handler import EventHandler
from notiflow.models.event import CustomEventData, TaskEventData
from notiflow.storage.auxiliary import IdempotencyStore


def test_kind_inferred_from_event_type(task_assigned_event: dict) -> None:
    event = parse_event(task_assigned_event)

    assert isinstance(event.data, TaskEventData)
    assert event.actor_id == "alice"
    assert event.template_variables()["taskTitle"] == "Write launch notes"
    assert event.template_variables()["assigneeName"] == "Bob"


def test_unknown_type_is_wrapped_as_custom() -> None:
    event = parse_event(
        {
            "event_type": "report.ready",
            "template_id": "tpl_1",
            "recipients": ["bob"],
            "data": {"actor": {"id": "alice", "name": "Alice"}, "reportName": "Q2"},
        }
    )

    assert isinstance(event.data, CustomEventData)
    assert event.template_variables() == {"reportName": "Q2", "actorId": "alice", "actorName": "Alice"}


def test_message_id_used_when_event_id_missing(task_assigned_event: dict) -> None:
    body = {k: v for k, v in task_assigned_event.items() if k != "event_id"}

    assert parse_event(body, message_id="msg-42").event_id == "msg-42"
    assert parse_event(task_assigned_event, message_id="msg-42").event_id == "evt_test_001"
    assert parse_event(body).event_id.startswith("evt_")


def test_invalid_payload_raises(task_assigned_event: dict) -> None:
    body = {**task_assigned_event, "data": {"actor": {"id": "alice"}, "action": "assigned"}}

    with pytest.raises(ValidationError):
        parse_event(body)


def test_builtin_type_rejects_payload_of_another_kind(task_assigned_event: dict) -> None:
    data = {"kind": "member", "actor": {"id": "alice"}, "action": "joined", "subject": {"id": "bob"}}

    with pytest.raises(ValidationError, match="needs 'task' data"):
        parse_event({**task_assigned_event, "data": data})


def test_templated_event_may_carry_any_kind(task_assigned_event: dict) -> None:
    data = {"kind": "custom", "actor": {"id": "alice"}, "variables": {"note": "hi"}}

    event = parse_event({**task_assigned_event, "template_id": "tpl_1", "data": data})

    assert isinstance(event.data, CustomEventData)


def test_criteria_recipients_parsed(task_assigned_event: dict) -> None:
    event = parse_event({**task_assigned_event, "recipients": {"expression": "role == 'admin'"}})

    assert event.recipients.expression == "role == 'admin'"


@pytest.mark.asyncio
async def test_handler_delivers_each_event_once(orchestrator, users, redis, task_assigned_event) -> None:
    handler = EventHandler(orchestrator, IdempotencyStore(redis))
    event = parse_event(task_assigned_event)

    await handler.handle_event(event)
    await handler.handle_event(event)

    assert await orchestrator.unread_count("bob") == 1
    assert await IdempotencyStore(redis).is_processed("evt_test_001")

"""Tests for the HTTP API and its response envelope."""

from collections.abc import Iterator
from datetime import timedelta

import fakeredis
import pytest
from fastapi.testclient import TestClient

from notiflow.api.app import create_app
from notiflow.models.common import Channel, utcnow
from notiflow.notification.orchestrator import create_orchestrator

API = "/api/v1"


@pytest.fixture
def client(settings, email_channel, push_channel) -> Iterator[TestClient]:
    redis = fakeredis.FakeAsyncRedis(decode_responses=True)
    orchestrator = create_orchestrator(
        redis,
        channels={Channel.EMAIL: email_channel, Channel.PUSH: push_channel},
        settings=settings,
    )
    with TestClient(create_app(orchestrator)) as test_client:
        test_client.put(f"{API}/users/alice", json={"name": "Alice", "email": "alice@example.com"})
        test_client.put(
            f"{API}/users/bob",
            json={"name": "Bob", "email": "bob@example.com", "attributes": {"role": "member"}},
        )
        yield test_client


def create_template(client: TestClient, **overrides) -> dict:
    body = {
        "name": "Welcome",
        "type": "member.joined",
        "title": "Welcome {{ name }}",
        "body": "Say hi to {{ team }}",
        "variables": {"name": {}, "team": {"required": False, "default": "the team"}},
        **overrides,
    }
    response = client.post(f"{API}/templates", json=body)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_deliver_and_inbox_flow(client: TestClient, task_assigned_event: dict, email_channel) -> None:
    response = client.post(f"{API}/notifications/deliver", json=task_assigned_event)

    assert response.status_code == 200
    body = response.json()
    assert body["code"] == 0
    assert body["message"] == "1 notifications created"
    [notification] = body["data"]
    assert notification["user_id"] == "bob"
    assert len(email_channel.sent) == 1

    inbox = client.get(f"{API}/notifications", params={"user_id": "bob"}).json()["data"]
    assert [n["notification_id"] for n in inbox] == [notification["notification_id"]]
    assert client.get(f"{API}/notifications/unread-count", params={"user_id": "bob"}).json()["data"]["unread"] == 1

    read = client.post(f"{API}/notifications/{notification['notification_id']}/read")
    assert read.json()["data"]["read"] is True
    assert client.get(f"{API}/notifications/unread-count", params={"user_id": "bob"}).json()["data"]["unread"] == 0

    deliveries = client.get(f"{API}/notifications/{notification['notification_id']}/deliveries").json()["data"]
    assert {d["channel"] for d in deliveries} == {"app", "email"}


def test_invalid_event_is_a_validation_error(client: TestClient, task_assigned_event: dict) -> None:
    body = {**task_assigned_event, "data": {"actor": {"id": "alice"}, "action": "assigned"}}

    response = client.post(f"{API}/notifications/deliver", json=body)

    assert response.status_code == 422
    assert response.json()["code"] == 422
    assert response.json()["message"] == "Validation error"


def test_unknown_notification_is_404(client: TestClient) -> None:
    response = client.get(f"{API}/notifications/ntf_missing")

    assert response.status_code == 404
    assert response.json() == {"code": 404, "message": "Notification ntf_missing not found", "data": None}


def test_unknown_user_is_404(client: TestClient) -> None:
    assert client.get(f"{API}/users/nobody").status_code == 404
    assert client.get(f"{API}/users/bob").json()["data"]["attributes"] == {"role": "member"}


def test_template_lifecycle(client: TestClient) -> None:
    template = create_template(client)
    template_id = template["template_id"]

    rendered = client.post(f"{API}/templates/{template_id}/render", json={"data": {"name": "Bob"}})
    assert rendered.json()["data"]["title"] == "Welcome Bob"
    assert rendered.json()["data"]["body"] == "Say hi to the team"

    updated = client.patch(f"{API}/templates/{template_id}", json={"title": "Hello {{ name }}"})
    assert updated.json()["data"]["version"] == 2

    restored = client.post(f"{API}/templates/{template_id}/rollback", json={"version": 1})
    assert restored.json()["data"]["version"] == 3
    assert restored.json()["data"]["title"] == "Welcome {{ name }}"

    versions = client.get(f"{API}/templates/{template_id}/versions").json()["data"]
    assert [v["version"] for v in versions] == [3, 2, 1]

    listing = client.get(f"{API}/templates", params={"type": "member.joined"}).json()
    assert listing["total"] == 1


def test_template_errors_carry_variables(client: TestClient) -> None:
    undeclared = client.post(
        f"{API}/templates",
        json={"name": "Broken", "type": "x", "title": "{{ who }}", "body": "body"},
    )
    assert undeclared.status_code == 400
    assert undeclared.json()["data"] == {"variables": ["who"]}

    template = create_template(client)
    missing = client.post(f"{API}/templates/{template['template_id']}/render", json={"data": {}})
    assert missing.status_code == 400
    assert missing.json()["data"] == {"variables": ["name"]}

    assert client.get(f"{API}/templates/tpl_missing").status_code == 404


def test_ab_test_status_transitions(client: TestClient) -> None:
    template = create_template(client)
    created = client.post(
        f"{API}/ab-tests",
        json={
            "name": "Greeting",
            "template_id": template["template_id"],
            "variants": [
                {"variant_id": "a", "title": "Hi {{ name }}", "body": "A"},
                {"variant_id": "b", "title": "Hey {{ name }}", "body": "B"},
            ],
        },
    )
    test_id = created.json()["data"]["test_id"]
    assert created.json()["data"]["status"] == "draft"

    draft_pick = client.get(f"{API}/ab-tests/{test_id}/variant", params={"user_id": "bob"})
    assert draft_pick.status_code == 409

    assert client.patch(f"{API}/ab-tests/{test_id}", json={"status": "active"}).status_code == 200
    back_to_draft = client.patch(f"{API}/ab-tests/{test_id}", json={"status": "draft"})
    assert back_to_draft.status_code == 409
    assert back_to_draft.json()["message"] == "Invalid status transition from active to draft"

    pick = client.get(f"{API}/ab-tests/{test_id}/variant", params={"user_id": "bob"})
    assert pick.json()["data"]["variant_id"] in {"a", "b"}

    metrics = client.get(f"{API}/ab-tests/{test_id}/metrics").json()["data"]
    assert set(metrics["metrics"]) == {"a", "b"}


def test_ab_test_needs_two_variants(client: TestClient) -> None:
    response = client.post(
        f"{API}/ab-tests",
        json={"name": "Solo", "template_id": "tpl_1", "variants": [{"title": "t", "body": "b"}]},
    )

    assert response.status_code == 422


def test_schedule_crud(client: TestClient) -> None:
    template = create_template(client)
    run_at = (utcnow() + timedelta(days=1)).isoformat()

    created = client.post(
        f"{API}/schedules",
        json={
            "template_id": template["template_id"],
            "recipients": ["bob"],
            "schedule": {"type": "one-time", "date": run_at},
            "data": {"name": "Bob"},
        },
    )
    assert created.status_code == 200, created.text
    schedule_id = created.json()["data"]["schedule_id"]
    assert created.json()["data"]["status"] == "pending"

    listing = client.get(f"{API}/schedules", params={"status": "pending"}).json()
    assert listing["total"] == 1

    assert client.delete(f"{API}/schedules/{schedule_id}").status_code == 200
    assert client.get(f"{API}/schedules/{schedule_id}").status_code == 404


def test_schedule_for_unknown_template_is_404(client: TestClient) -> None:
    response = client.post(
        f"{API}/schedules",
        json={
            "template_id": "tpl_missing",
            "recipients": ["bob"],
            "schedule": {"type": "one-time", "date": utcnow().isoformat()},
        },
    )

    assert response.status_code == 404


def test_rate_limit_settings(client: TestClient) -> None:
    updated = client.patch(f"{API}/users/bob/rate-limits", json={"channel": "email", "max_per_minute": 5})
    assert updated.json()["data"]["max_per_minute"] == 5

    status = client.get(f"{API}/users/bob/rate-limits/status", params={"channel": "email"}).json()["data"]
    assert status["minute"]["max"] == 5
    assert status["minute"]["current"] == 0


def test_preferences_and_batching_rules(client: TestClient) -> None:
    preference = client.patch(f"{API}/users/bob/preferences/task.assigned", json={"push": False})
    assert preference.json()["data"]["push"] is False
    assert preference.json()["data"]["priority"] == "high"

    invalid = client.patch(f"{API}/users/bob/batching-rules", json={"min_batch_size": 9, "max_batch_size": 2})
    assert invalid.status_code == 400

    rule = client.patch(f"{API}/users/bob/batching-rules", json={"category": "task", "max_batch_size": 20})
    assert rule.json()["data"]["max_batch_size"] == 20
    assert len(client.get(f"{API}/users/bob/batching-rules").json()["data"]) == 1


def test_delivery_analytics(client: TestClient, task_assigned_event: dict) -> None:
    client.post(f"{API}/notifications/deliver", json=task_assigned_event)

    analytics = client.get(f"{API}/analytics/delivery", params={"user_id": "bob"}).json()["data"]

    assert analytics["by_channel"] == {"app": 1, "email": 1}
    assert client.get(f"{API}/batches/bat_missing").status_code == 404


def test_template_performance(client: TestClient) -> None:
    template = create_template(client)
    template_id = template["template_id"]
    other = create_template(client, name="Welcome back")["template_id"]
    event = {
        "event_type": "member.joined",
        "template_id": template_id,
        "recipients": ["bob"],
        "data": {"kind": "custom", "actor": {"id": "alice"}, "variables": {"name": "Bob"}},
    }
    [notification] = client.post(f"{API}/notifications/deliver", json=event).json()["data"]
    client.post(f"{API}/notifications/{notification['notification_id']}/click")

    performance = client.get(f"{API}/analytics/templates/{template_id}").json()["data"]
    assert (performance["sent"], performance["read"], performance["clicked"]) == (1, 1, 1)
    assert performance["click_rate"] == 100.0

    ranked = client.get(f"{API}/analytics/templates", params={"template_ids": [other, template_id]}).json()["data"]
    assert [p["template_id"] for p in ranked] == [template_id, other]
    assert client.get(f"{API}/analytics/templates/tpl_missing").status_code == 404

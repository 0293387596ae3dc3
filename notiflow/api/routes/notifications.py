"""Notification delivery and inbox API routes."""

from typing import Any

from fastapi import APIRouter, Body, Query
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from notiflow.api.deps import OrchestratorDep
from notiflow.core.errors import NotificationNotFound
from notiflow.messaging.consumer import parse_event
from notiflow.models.notification import DeliveryRecord, Notification
from notiflow.schemas.common import APIResponse
from notiflow.schemas.notification import ClickRequest, UnreadCountResponse

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/deliver", response_model=APIResponse[list[Notification]])
async def deliver_event(
    orchestrator: OrchestratorDep,
    body: dict[str, Any] = Body(..., description="Domain event"),
) -> APIResponse[list[Notification]]:
    """Deliver a domain event to its recipients.

    The body has the same shape as a queue message; ``data.kind`` may be
    omitted and is inferred from the event type.
    """
    try:
        event = parse_event(body)
    except ValidationError as e:
        raise RequestValidationError(e.errors()) from e

    created = await orchestrator.deliver(event)
    return APIResponse(data=created, message=f"{len(created)} notifications created")


@router.get("", response_model=APIResponse[list[Notification]])
async def list_notifications(
    orchestrator: OrchestratorDep,
    user_id: str = Query(..., description="Inbox owner"),
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
) -> APIResponse[list[Notification]]:
    """List a user's notifications, newest first."""
    notifications = await orchestrator.list_notifications(user_id, unread_only, limit)
    return APIResponse(data=notifications)


@router.get("/unread-count", response_model=APIResponse[UnreadCountResponse])
async def unread_count(
    orchestrator: OrchestratorDep,
    user_id: str = Query(..., description="Inbox owner"),
) -> APIResponse[UnreadCountResponse]:
    count = await orchestrator.unread_count(user_id)
    return APIResponse(data=UnreadCountResponse(user_id=user_id, unread=count))


@router.get("/{notification_id}", response_model=APIResponse[Notification])
async def get_notification(
    notification_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[Notification]:
    notification = await orchestrator.notifications.get(notification_id)
    if notification is None:
        raise NotificationNotFound(notification_id)
    return APIResponse(data=notification)


@router.get("/{notification_id}/deliveries", response_model=APIResponse[list[DeliveryRecord]])
async def get_deliveries(
    notification_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[list[DeliveryRecord]]:
    """Delivery records of a notification, oldest first."""
    records = await orchestrator.tracker.get_records(notification_id)
    return APIResponse(data=records)


@router.post("/{notification_id}/read", response_model=APIResponse[Notification])
async def mark_read(
    notification_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[Notification]:
    notification = await orchestrator.mark_read(notification_id)
    return APIResponse(data=notification)


@router.post("/{notification_id}/click", response_model=APIResponse[Notification])
async def mark_clicked(
    notification_id: str,
    orchestrator: OrchestratorDep,
    data: ClickRequest | None = None,
) -> APIResponse[Notification]:
    channel = data.channel if data else ClickRequest().channel
    notification = await orchestrator.mark_clicked(notification_id, channel)
    return APIResponse(data=notification)


@router.post("/{notification_id}/dismiss", response_model=APIResponse[Notification])
async def dismiss(
    notification_id: str,
    orchestrator: OrchestratorDep,
) -> APIResponse[Notification]:
    notification = await orchestrator.dismiss(notification_id)
    return APIResponse(data=notification)

"""Notification inbox API schemas."""

from pydantic import BaseModel, Field

from notiflow.models.batch import NotificationBatch
from notiflow.models.common import Channel
from notiflow.models.notification import Notification


class ClickRequest(BaseModel):
    """Schema for recording a notification click."""

    channel: Channel = Field(default=Channel.APP, description="Channel the click came from")


class UnreadCountResponse(BaseModel):
    user_id: str
    unread: int = Field(..., ge=0)


class BatchDetail(BaseModel):
    """A batch together with its member notifications."""

    batch: NotificationBatch
    members: list[Notification] = Field(default_factory=list)

"""Notification and delivery domain models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from notiflow.models.common import (
    Channel,
    NotificationCategory,
    NotificationPriority,
    new_id,
    utcnow,
)


class DeliveryStatus(str, Enum):
    """Status reached by one channel delivery attempt."""

    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CLICKED = "clicked"
    DISMISSED = "dismissed"


class Notification(BaseModel):
    """Persisted, user-facing notification.

    Content is fixed at creation; only ``read``/``dismissed`` change afterwards.
    """

    notification_id: str = Field(default_factory=lambda: new_id("ntf"))
    type: str = Field(..., description="Event or template type, e.g. 'task.assigned'")
    category: NotificationCategory = Field(default=NotificationCategory.SYSTEM)
    priority: NotificationPriority = Field(default=NotificationPriority.NORMAL)
    title: str
    message: str
    user_id: str
    group_id: str | None = Field(default=None, description="Logical group key")
    group_order: int | None = Field(default=None, description="Position inside the group")
    url: str | None = None
    read: bool = False
    read_at: datetime | None = None
    dismissed: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_batch(self) -> bool:
        return bool(self.metadata.get("is_batch"))

    @property
    def template_id(self) -> str | None:
        """Stored template the content was rendered from, if any."""
        return self.metadata.get("template_id")

    @property
    def ab_test(self) -> tuple[str, str] | None:
        """(test_id, variant_id) when the content came from an experiment."""
        test_id = self.metadata.get("ab_test_id")
        variant_id = self.metadata.get("ab_variant_id")
        if test_id and variant_id:
            return test_id, variant_id
        return None


class DeliveryRecord(BaseModel):
    """Immutable fact: a channel delivery of a notification reached a status."""

    record_id: str = Field(default_factory=lambda: new_id("dlv"))
    notification_id: str
    user_id: str
    channel: Channel
    status: DeliveryStatus
    error: str | None = None
    template_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ChannelPayload(BaseModel):
    """Content handed to an outbound channel sender."""

    notification_id: str
    title: str
    body: str
    url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChannelOutcome(BaseModel):
    """Result reported by a channel sender."""

    status: DeliveryStatus
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != DeliveryStatus.FAILED


class UserContact(BaseModel):
    """Directory entry used to address channels and match recipient criteria."""

    user_id: str
    name: str | None = None
    email: str | None = None
    push_endpoint: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    def address_for(self, channel: Channel) -> str | None:
        if channel == Channel.EMAIL:
            return self.email
        if channel == Channel.PUSH:
            return self.push_endpoint
        return self.user_id

    def display_name(self) -> str:
        return self.name or self.email or self.user_id


class TimelineInterval(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"


class DeliveryAnalytics(BaseModel):
    """Aggregates over delivery records; rates are percentages per channel."""

    total: int = 0
    by_channel: dict[str, int] = Field(default_factory=dict)
    by_status: dict[str, int] = Field(default_factory=dict)
    failure_rates: dict[str, float] = Field(default_factory=dict)
    click_rates: dict[str, float] = Field(default_factory=dict)


class TemplatePerformance(BaseModel):
    """Funnel of the notifications rendered from one template.

    Counts are distinct notifications; each rate is a percentage of the
    previous stage.
    """

    template_id: str
    sent: int = 0
    delivered: int = 0
    read: int = 0
    clicked: int = 0
    failed: int = 0
    delivery_rate: float = 0.0
    read_rate: float = 0.0
    click_rate: float = 0.0


class TimelinePoint(BaseModel):
    period: str
    channel: Channel
    status: DeliveryStatus
    count: int

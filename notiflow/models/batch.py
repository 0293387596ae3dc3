"""Batching rule and notification batch models."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from notiflow.models.common import NotificationPriority, new_id, utcnow


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class BatchingRule(BaseModel):
    """Whether and how notifications for a (user, type?, category?) key batch."""

    user_id: str
    template_type: str | None = None
    category: str | None = None
    enabled: bool = True
    batch_window_seconds: int = Field(default=300, ge=1)
    min_batch_size: int = Field(default=2, ge=1)
    max_batch_size: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def validate_sizes(self) -> "BatchingRule":
        if self.min_batch_size > self.max_batch_size:
            raise ValueError("min_batch_size cannot exceed max_batch_size")
        return self

    @property
    def specificity(self) -> int:
        """exact(type+category)=3 > type-only=2 > category-only=1 > global=0."""
        return (2 if self.template_type else 0) + (1 if self.category else 0)


class BatchingRuleUpdate(BaseModel):
    template_type: str | None = None
    category: str | None = None
    enabled: bool | None = None
    batch_window_seconds: int | None = Field(default=None, ge=1)
    min_batch_size: int | None = Field(default=None, ge=1)
    max_batch_size: int | None = Field(default=None, ge=1)


class NotificationBatch(BaseModel):
    """Notifications awaiting a combined send.

    The rule's window and sizes are copied in at creation so a later rule
    edit does not change how an open batch is judged.
    """

    batch_id: str = Field(default_factory=lambda: new_id("bat"))
    user_id: str
    template_type: str
    category: str
    group_id: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    status: BatchStatus = BatchStatus.PENDING
    count: int = 0
    batch_window_seconds: int
    min_batch_size: int
    max_batch_size: int
    scheduled_for: datetime
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: datetime | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def accepts(self, now: datetime) -> bool:
        """Open for another member at ``now``."""
        return (
            self.status == BatchStatus.PENDING
            and self.created_at >= now - timedelta(seconds=self.batch_window_seconds)
            and self.count < self.max_batch_size
        )

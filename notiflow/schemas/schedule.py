"""Scheduled notification API schemas."""

from typing import Any

from pydantic import BaseModel, Field

from notiflow.models.schedule import RecipientCriteria, ScheduleConfig, ScheduleStatus


class ScheduleCreate(BaseModel):
    """Schema for creating a scheduled notification."""

    template_id: str = Field(..., description="Template to render on each run")
    recipients: list[str] | RecipientCriteria = Field(..., description="User ids or selection criteria")
    schedule: ScheduleConfig
    data: dict[str, Any] = Field(default_factory=dict, description="Template variables")
    created_by: str = Field(default="system")


class ScheduleUpdate(BaseModel):
    """Schema for updating a scheduled notification."""

    recipients: list[str] | RecipientCriteria | None = None
    schedule: ScheduleConfig | None = None
    data: dict[str, Any] | None = None
    status: ScheduleStatus | None = None

"""Template API schemas."""

from typing import Any

from pydantic import BaseModel, Field

from notiflow.models.template import TemplateVariable


class TemplateCreate(BaseModel):
    """Schema for creating a template."""

    name: str = Field(..., min_length=1, max_length=100)
    type: str = Field(..., min_length=1, description="Notification type, e.g. 'task.assigned'")
    title: str = Field(..., description="Title expression")
    body: str = Field(..., description="Body expression")
    variables: dict[str, TemplateVariable] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str = Field(default="system")


class TemplateUpdate(BaseModel):
    """Schema for updating a template; content changes create a new version."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    title: str | None = None
    body: str | None = None
    variables: dict[str, TemplateVariable] | None = None
    metadata: dict[str, Any] | None = None
    is_active: bool | None = None
    updated_by: str | None = None


class RollbackRequest(BaseModel):
    version: int = Field(..., ge=1, description="Version to restore")
    updated_by: str | None = None


class RenderRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict, description="Template variables")

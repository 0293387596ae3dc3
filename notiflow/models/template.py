"""Notification template domain models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from notiflow.models.common import new_id, utcnow


class TemplateVariable(BaseModel):
    required: bool = True
    description: str = ""
    default: Any | None = None


class Template(BaseModel):
    """Current state of a versioned message definition."""

    template_id: str = Field(default_factory=lambda: new_id("tpl"))
    name: str
    type: str = Field(..., description="Notification type the template produces")
    title: str = Field(..., description="Title expression")
    body: str = Field(..., description="Body expression")
    variables: dict[str, TemplateVariable] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    version: int = 1
    created_by: str = Field(default="system")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TemplateVersion(BaseModel):
    """Immutable snapshot written on every content change."""

    template_id: str
    version: int
    title: str
    body: str
    variables: dict[str, TemplateVariable] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str = Field(default="system")
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_template(cls, template: Template) -> "TemplateVersion":
        return cls(
            template_id=template.template_id,
            version=template.version,
            title=template.title,
            body=template.body,
            variables=template.variables,
            metadata=template.metadata,
            created_by=template.created_by,
            created_at=template.updated_at,
        )


class RenderedTemplate(BaseModel):
    title: str
    body: str
    metadata: dict[str, Any] = Field(default_factory=dict)

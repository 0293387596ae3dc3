"""Per-user delivery settings API schemas: contacts, rate limits."""

from typing import Any

from pydantic import BaseModel, Field

from notiflow.models.common import Channel
from notiflow.models.rate_limit import RateLimitConfig


class UserContactUpdate(BaseModel):
    """Schema for creating or replacing a directory entry."""

    name: str | None = None
    email: str | None = None
    push_endpoint: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class RateLimitUpdate(RateLimitConfig):
    """Schema for updating one rate-limit policy."""

    channel: Channel
    template_type: str | None = None
    category: str | None = None

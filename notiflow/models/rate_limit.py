"""Rate limit policy and throttle window models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from notiflow.models.common import Channel


class WindowType(str, Enum):
    """Throttle window granularity."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


class RateLimitKey(BaseModel):
    """Identifies a policy: user + channel, optionally narrowed by type/category."""

    user_id: str
    channel: Channel
    template_type: str | None = None
    category: str | None = None

    def slug(self) -> str:
        return ":".join(
            [
                self.user_id,
                self.channel.value,
                self.template_type or "*",
                self.category or "*",
            ]
        )


class RateLimitConfig(BaseModel):
    """Partial update of a policy's caps."""

    max_per_minute: int | None = Field(default=None, ge=1)
    max_per_hour: int | None = Field(default=None, ge=1)
    max_per_day: int | None = Field(default=None, ge=1)


class RateLimitPolicy(BaseModel):
    """Caps for one rate-limit key."""

    user_id: str
    channel: Channel
    template_type: str | None = None
    category: str | None = None
    max_per_minute: int = Field(default=2, ge=1)
    max_per_hour: int = Field(default=30, ge=1)
    max_per_day: int = Field(default=100, ge=1)

    @property
    def key(self) -> RateLimitKey:
        return RateLimitKey(
            user_id=self.user_id,
            channel=self.channel,
            template_type=self.template_type,
            category=self.category,
        )

    @property
    def specificity(self) -> int:
        """exact(type+category)=3 > type-only=2 > category-only=1 > user+channel=0."""
        return (2 if self.template_type else 0) + (1 if self.category else 0)

    def matches(self, key: RateLimitKey) -> bool:
        return (
            self.user_id == key.user_id
            and self.channel == key.channel
            and self.template_type in (None, key.template_type)
            and self.category in (None, key.category)
        )

    def max_for(self, window: WindowType) -> int:
        return {
            WindowType.MINUTE: self.max_per_minute,
            WindowType.HOUR: self.max_per_hour,
            WindowType.DAY: self.max_per_day,
        }[window]


class ThrottleWindow(BaseModel):
    """Counter for one policy key and one window boundary."""

    slug: str
    window_type: WindowType
    window_start: datetime
    window_end: datetime
    count: int = 0


class RateLimitResult(BaseModel):
    allowed: bool
    window: WindowType | None = None
    reason: str | None = None
    next_allowed_at: datetime | None = None


class ThrottleStatus(BaseModel):
    current: int
    max: int
    remaining: int
    resets_at: datetime

"""User notification preference models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from notiflow.models.common import Channel, NotificationPriority, utcnow
from notiflow.models.schedule import TIME_OF_DAY, validate_timezone_name


class DigestFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class DeliveryWindow(BaseModel):
    """Local time range in which sends are allowed; may span midnight."""

    start: str = Field(..., description="HH:MM")
    end: str = Field(..., description="HH:MM")
    days: list[int] | None = Field(default=None, description="Weekdays, 0=Sunday")

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not TIME_OF_DAY.match(value):
            raise ValueError("time must be HH:MM")
        return value

    @staticmethod
    def _minutes(value: str) -> int:
        hours, minutes = value.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def start_minutes(self) -> int:
        return self._minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return self._minutes(self.end)


class ChannelSchedule(BaseModel):
    """Allowed delivery windows for one channel."""

    channel: Channel
    timezone: str = Field(default="UTC")
    windows: list[DeliveryWindow] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return validate_timezone_name(value)


class Preference(BaseModel):
    """Per-user delivery policy for one template type."""

    user_id: str
    template_type: str
    enabled: bool = True
    email: bool = True
    push: bool = True
    priority: NotificationPriority = NotificationPriority.NORMAL
    include_in_digest: bool = True
    digest_frequency: DigestFrequency | None = None
    channel_schedules: list[ChannelSchedule] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    def schedule_for(self, channel: Channel) -> ChannelSchedule | None:
        for schedule in self.channel_schedules:
            if schedule.channel == channel:
                return schedule
        return None


class PreferenceUpdate(BaseModel):
    enabled: bool | None = None
    email: bool | None = None
    push: bool | None = None
    priority: NotificationPriority | None = None
    include_in_digest: bool | None = None
    digest_frequency: DigestFrequency | None = None
    channel_schedules: list[ChannelSchedule] | None = None

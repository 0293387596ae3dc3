"""Scheduled notification domain models."""

import re
from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from notiflow.models.common import new_id, utcnow

TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def validate_timezone_name(value: str) -> str:
    """Reject names the zoneinfo database does not know."""
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {value}") from e
    return value


class ScheduleType(str, Enum):
    ONE_TIME = "one-time"
    RECURRING = "recurring"


class RecurrenceType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RecurringConfig(BaseModel):
    """Recurrence rule evaluated in the schedule's own timezone."""

    type: RecurrenceType
    time: str = Field(..., description="Local time of day, HH:MM")
    days: list[int] = Field(
        default_factory=list,
        description="Weekdays (0=Sunday) for weekly, days of month (1-31) for monthly",
    )
    timezone: str = Field(default="UTC")
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime | None = None

    @field_validator("time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not TIME_OF_DAY.match(value):
            raise ValueError("time must be HH:MM")
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return validate_timezone_name(value)

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])


class ScheduleConfig(BaseModel):
    type: ScheduleType
    date: datetime | None = Field(default=None, description="Run time for one-time schedules")
    recurring: RecurringConfig | None = None

    @model_validator(mode="after")
    def validate_config(self) -> "ScheduleConfig":
        if self.type == ScheduleType.ONE_TIME and self.date is None:
            raise ValueError("date is required for one-time schedules")
        if self.type == ScheduleType.RECURRING and self.recurring is None:
            raise ValueError("recurring config is required for recurring schedules")
        return self


class RecipientCriteria(BaseModel):
    """Selects recipients from the user directory instead of listing ids.

    ``attributes`` must all match exactly; ``expression`` is a boolean
    expression over the user's attributes, e.g. ``role == 'admin'``.
    """

    attributes: dict[str, Any] = Field(default_factory=dict)
    expression: str | None = None

    @model_validator(mode="after")
    def validate_criteria(self) -> "RecipientCriteria":
        if not self.attributes and not self.expression:
            raise ValueError("criteria needs attributes or an expression")
        return self


class ScheduledNotification(BaseModel):
    schedule_id: str = Field(default_factory=lambda: new_id("sch"))
    template_id: str
    recipients: list[str] | RecipientCriteria
    schedule: ScheduleConfig
    data: dict[str, Any] = Field(default_factory=dict)
    status: ScheduleStatus = ScheduleStatus.PENDING
    next_run_at: datetime
    last_run_at: datetime | None = None
    error: str | None = None
    created_by: str = Field(default="system")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_recurring(self) -> bool:
        return self.schedule.type == ScheduleType.RECURRING

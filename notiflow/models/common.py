"""Shared enums and helpers for domain models."""

import uuid
from datetime import datetime, timezone
from enum import Enum


class Channel(str, Enum):
    """Delivery medium."""

    APP = "app"
    EMAIL = "email"
    PUSH = "push"


class NotificationCategory(str, Enum):
    PROJECT = "project"
    TASK = "task"
    MEMBER = "member"
    SYSTEM = "system"


class NotificationPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed short identifier, e.g. ``ntf_3f9a1c2b7d0e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def to_timestamp(value: datetime) -> float:
    """Seconds since epoch, used as sorted-set scores."""
    return ensure_utc(value).timestamp()

"""Engine error taxonomy."""

from datetime import datetime


class NotiflowError(Exception):
    """Base class for all engine errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(NotiflowError):
    """Input rejected before any state changed."""


class NotFoundError(NotiflowError):
    """Requested record does not exist."""

    status_code = 404


class TemplateNotFound(NotFoundError):
    def __init__(self, template_id: str):
        super().__init__(f"Template {template_id} not found")
        self.template_id = template_id


class ScheduleNotFound(NotFoundError):
    def __init__(self, schedule_id: str):
        super().__init__(f"Schedule {schedule_id} not found")
        self.schedule_id = schedule_id


class ABTestNotFound(NotFoundError):
    def __init__(self, test_id: str):
        super().__init__(f"Test {test_id} not found")
        self.test_id = test_id


class NotificationNotFound(NotFoundError):
    def __init__(self, notification_id: str):
        super().__init__(f"Notification {notification_id} not found")
        self.notification_id = notification_id


class RateLimitExceeded(NotiflowError):
    """Send refused by a throttle window; retry after ``next_allowed_at``."""

    status_code = 429

    def __init__(self, reason: str, next_allowed_at: datetime | None = None):
        super().__init__(reason)
        self.next_allowed_at = next_allowed_at


class InvalidTemplateError(NotiflowError):
    """Template expression cannot be parsed or the template is unusable."""


class MissingVariableError(InvalidTemplateError):
    """A required variable is absent, or an expression uses an undeclared one."""

    def __init__(self, message: str, variables: list[str] | None = None):
        super().__init__(message)
        self.variables = variables or []


class InvalidStatusTransition(NotiflowError):
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid status transition from {current} to {requested}")
        self.current = current
        self.requested = requested


class ABTestNotActive(NotiflowError):
    status_code = 409

    def __init__(self, test_id: str):
        super().__init__(f"Test {test_id} not found or not active")
        self.test_id = test_id


class InvalidScheduleError(NotiflowError):
    """Schedule configuration cannot produce a run time."""


class ChannelDeliveryFailed(NotiflowError):
    """A single channel send failed; recorded, never propagated past the channel."""

    def __init__(self, channel: str, reason: str):
        super().__init__(f"{channel} delivery failed: {reason}")
        self.channel = channel
        self.reason = reason

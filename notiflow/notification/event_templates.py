"""Built-in templates for domain events.

The table is read-only and injected into the orchestrator, so tests can swap
in their own mapping.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from notiflow.models.common import NotificationCategory, NotificationPriority


@dataclass(frozen=True)
class FormattedEvent:
    """Content produced from an event by its template."""

    type: str
    category: NotificationCategory
    priority: NotificationPriority
    title: str
    message: str
    group_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EventTemplate:
    type: str
    category: NotificationCategory
    priority: NotificationPriority
    title: Callable[[Any], str]
    message: Callable[[Any], str]
    group_key: Callable[[Any], str] | None = None
    metadata: Callable[[Any], dict[str, Any]] | None = None

    def format(self, data: Any) -> FormattedEvent:
        return FormattedEvent(
            type=self.type,
            category=self.category,
            priority=self.priority,
            title=self.title(data),
            message=self.message(data),
            group_id=self.group_key(data) if self.group_key else None,
            metadata=self.metadata(data) if self.metadata else {},
        )


def _project_id(data: Any) -> str | None:
    return data.project.id if data.project else None


def _project_name(data: Any) -> str:
    return data.project.name if data.project else ""


def _task_metadata(data: Any) -> dict[str, Any]:
    return {"projectId": _project_id(data), "taskId": data.task.id}


def _task_group(data: Any) -> str:
    return f"task_{_project_id(data)}"


def _member_message(data: Any) -> str:
    role = f" as {data.role}" if data.role else ""
    return f"{data.subject.display_name} joined {_project_name(data)}{role}"


_TEMPLATES = [
    EventTemplate(
        type="project.created",
        category=NotificationCategory.PROJECT,
        priority=NotificationPriority.NORMAL,
        title=lambda data: "New Project Created",
        message=lambda data: f'{data.actor.display_name} created project "{_project_name(data)}"',
        metadata=lambda data: {"projectId": _project_id(data)},
    ),
    EventTemplate(
        type="member.joined",
        category=NotificationCategory.MEMBER,
        priority=NotificationPriority.NORMAL,
        group_key=lambda data: f"member_{_project_id(data)}",
        title=lambda data: "New Team Member",
        message=_member_message,
        metadata=lambda data: {"projectId": _project_id(data), "memberId": data.subject.id},
    ),
    EventTemplate(
        type="task.created",
        category=NotificationCategory.TASK,
        priority=NotificationPriority.NORMAL,
        group_key=_task_group,
        title=lambda data: "New Task Created",
        message=lambda data: (
            f'{data.actor.display_name} created task "{data.task.title}" in {_project_name(data)}'
        ),
        metadata=_task_metadata,
    ),
    EventTemplate(
        type="task.assigned",
        category=NotificationCategory.TASK,
        priority=NotificationPriority.HIGH,
        group_key=_task_group,
        title=lambda data: "Task Assigned to You",
        message=lambda data: (
            f'{data.actor.display_name} assigned you task "{data.task.title}" in {_project_name(data)}'
        ),
        metadata=_task_metadata,
    ),
    EventTemplate(
        type="task.completed",
        category=NotificationCategory.TASK,
        priority=NotificationPriority.NORMAL,
        group_key=_task_group,
        title=lambda data: "Task Completed",
        message=lambda data: (
            f'{data.actor.display_name} completed task "{data.task.title}" in {_project_name(data)}'
        ),
        metadata=_task_metadata,
    ),
    EventTemplate(
        type="comment.created",
        category=NotificationCategory.TASK,
        priority=NotificationPriority.NORMAL,
        title=lambda data: "New Comment",
        message=lambda data: (
            f'{data.actor.display_name} commented on "{data.task_title}": {data.comment_preview}'
        ),
    ),
    EventTemplate(
        type="mention.created",
        category=NotificationCategory.TASK,
        priority=NotificationPriority.HIGH,
        title=lambda data: "You were mentioned",
        message=lambda data: (
            f'{data.actor.display_name} mentioned you in {data.context} "{data.title}": {data.preview}'
        ),
    ),
]

EVENT_TEMPLATES: Mapping[str, EventTemplate] = MappingProxyType({t.type: t for t in _TEMPLATES})


def default_priority(event_type: str, templates: Mapping[str, EventTemplate] = EVENT_TEMPLATES) -> NotificationPriority:
    """Priority a new preference starts with for ``event_type``."""
    template = templates.get(event_type)
    return template.priority if template else NotificationPriority.NORMAL

"""Domain event models.

Event payloads are a union discriminated by ``kind``; each variant knows how
to flatten itself into template variables.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator

from notiflow.models.common import new_id, utcnow
from notiflow.models.schedule import RecipientCriteria


EVENT_KINDS = frozenset({"project", "member", "task", "comment", "mention"})


class UserRef(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.id


class ProjectRef(BaseModel):
    id: str
    name: str


class TaskRef(BaseModel):
    id: str
    title: str


class _BaseEventData(BaseModel):
    actor: UserRef
    project: ProjectRef | None = None

    def variables(self) -> dict[str, Any]:
        values: dict[str, Any] = {
            "actorId": self.actor.id,
            "actorName": self.actor.display_name,
        }
        if self.project:
            values["projectId"] = self.project.id
            values["projectName"] = self.project.name
        return values


class ProjectEventData(_BaseEventData):
    kind: Literal["project"] = "project"
    action: Literal["created", "updated", "deleted", "archived"]

    def variables(self) -> dict[str, Any]:
        return {**super().variables(), "action": self.action}


class MemberEventData(_BaseEventData):
    kind: Literal["member"] = "member"
    action: Literal["joined", "left", "invited", "removed"]
    subject: UserRef
    role: str | None = None

    def variables(self) -> dict[str, Any]:
        return {
            **super().variables(),
            "action": self.action,
            "memberId": self.subject.id,
            "memberName": self.subject.display_name,
            "role": self.role or "",
        }


class TaskEventData(_BaseEventData):
    kind: Literal["task"] = "task"
    action: Literal["created", "completed", "assigned", "updated", "deleted"]
    task: TaskRef
    assignee: UserRef | None = None

    def variables(self) -> dict[str, Any]:
        values = {
            **super().variables(),
            "action": self.action,
            "taskId": self.task.id,
            "taskTitle": self.task.title,
        }
        if self.assignee:
            values["assigneeName"] = self.assignee.display_name
        return values


class CommentEventData(_BaseEventData):
    kind: Literal["comment"] = "comment"
    action: Literal["created", "replied"] = "created"
    task_title: str
    comment_preview: str

    def variables(self) -> dict[str, Any]:
        return {
            **super().variables(),
            "action": self.action,
            "taskTitle": self.task_title,
            "commentPreview": self.comment_preview,
        }


class MentionEventData(_BaseEventData):
    kind: Literal["mention"] = "mention"
    context: Literal["task", "comment"]
    title: str
    preview: str

    def variables(self) -> dict[str, Any]:
        return {
            **super().variables(),
            "context": self.context,
            "title": self.title,
            "preview": self.preview,
        }


class CustomEventData(BaseModel):
    """Free-form variables for events rendered from stored templates."""

    kind: Literal["custom"] = "custom"
    actor: UserRef | None = None
    variables_: dict[str, Any] = Field(default_factory=dict, alias="variables")

    model_config = {"populate_by_name": True}

    def variables(self) -> dict[str, Any]:
        values = dict(self.variables_)
        if self.actor:
            values.setdefault("actorId", self.actor.id)
            values.setdefault("actorName", self.actor.display_name)
        return values


EventData = Annotated[
    Union[
        ProjectEventData,
        MemberEventData,
        TaskEventData,
        CommentEventData,
        MentionEventData,
        CustomEventData,
    ],
    Field(discriminator="kind"),
]


class NotificationEvent(BaseModel):
    """A domain event to turn into notifications."""

    event_id: str = Field(default_factory=lambda: new_id("evt"))
    event_type: str = Field(..., description="Event type, e.g. 'task.assigned'")
    data: EventData
    recipients: list[str] | RecipientCriteria = Field(default_factory=list)
    template_id: str | None = Field(
        default=None,
        description="Stored template to render instead of the built-in event template",
    )
    url: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_kind_matches_type(self) -> "NotificationEvent":
        """Built-in event types need the payload of their own kind."""
        prefix = self.event_type.split(".", 1)[0]
        if self.template_id is None and prefix in EVENT_KINDS and self.data.kind != prefix:
            raise ValueError(
                f"Event type '{self.event_type}' needs '{prefix}' data, got '{self.data.kind}'"
            )
        return self

    @property
    def actor_id(self) -> str | None:
        return self.data.actor.id if self.data.actor else None

    def template_variables(self) -> dict[str, Any]:
        return self.data.variables()

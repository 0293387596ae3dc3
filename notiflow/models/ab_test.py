"""A/B test domain models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from notiflow.models.common import new_id, utcnow


class ABTestStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    STOPPED = "stopped"


# Legal status moves; anything else is an InvalidStatusTransition
STATUS_TRANSITIONS: dict[ABTestStatus, frozenset[ABTestStatus]] = {
    ABTestStatus.DRAFT: frozenset({ABTestStatus.ACTIVE, ABTestStatus.STOPPED}),
    ABTestStatus.ACTIVE: frozenset({ABTestStatus.COMPLETED, ABTestStatus.STOPPED}),
    ABTestStatus.COMPLETED: frozenset(),
    ABTestStatus.STOPPED: frozenset(),
}


class ABTestEventType(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    CLICKED = "clicked"


class Variant(BaseModel):
    """One candidate content version."""

    variant_id: str = Field(default_factory=lambda: new_id("var"))
    title: str
    body: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    weight: float = Field(default=1.0, gt=0)

    @field_validator("weight", mode="before")
    @classmethod
    def default_weight(cls, value: Any) -> Any:
        return 1.0 if value in (None, 0) else value


class ABTest(BaseModel):
    test_id: str = Field(default_factory=lambda: new_id("abt"))
    name: str
    description: str = ""
    template_id: str
    variants: list[Variant] = Field(..., min_length=2)
    status: ABTestStatus = ABTestStatus.DRAFT
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime | None = None
    winning_variant: str | None = None
    created_by: str = Field(default="system")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def variant(self, variant_id: str) -> Variant | None:
        for variant in self.variants:
            if variant.variant_id == variant_id:
                return variant
        return None


class ABTestEvent(BaseModel):
    """Append-only exposure/outcome fact."""

    test_id: str
    variant_id: str
    user_id: str
    event: ABTestEventType
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class VariantMetrics(BaseModel):
    sent: int = 0
    delivered: int = 0
    read: int = 0
    clicked: int = 0
    delivery_rate: float = 0.0
    read_rate: float = 0.0
    click_rate: float = 0.0


class ABTestMetrics(BaseModel):
    test_id: str
    metrics: dict[str, VariantMetrics]
    status: ABTestStatus
    start_date: datetime
    end_date: datetime | None = None
    winning_variant: str | None = None

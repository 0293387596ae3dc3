"""A/B test API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from notiflow.models.ab_test import ABTestStatus, Variant


class ABTestCreate(BaseModel):
    """Schema for creating an A/B test."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    template_id: str
    variants: list[Variant] = Field(..., min_length=2, description="At least two content variants")
    start_date: datetime | None = None
    end_date: datetime | None = None
    created_by: str = Field(default="system")


class ABTestUpdate(BaseModel):
    """Schema for updating an A/B test; status moves are checked server-side."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    variants: list[Variant] | None = Field(default=None, min_length=2)
    start_date: datetime | None = None
    end_date: datetime | None = None
    status: ABTestStatus | None = None
    winning_variant: str | None = None

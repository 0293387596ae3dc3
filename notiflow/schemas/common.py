"""Common API schemas: the ``{code, message, data}`` envelope and paging."""

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    """Standard API response wrapper."""

    code: int = Field(default=0, description="Response code, 0 for success")
    message: str = Field(default="success", description="Response message")
    data: T | None = Field(default=None, description="Response data")


class PaginationParams(BaseModel):
    """Pagination query parameters."""

    page: int = Field(default=1, ge=1, description="Page number")
    page_size: int = Field(default=20, ge=1, le=100, description="Items per page")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaginatedResponse(BaseModel, Generic[T]):
    """Envelope for one page of a listing."""

    code: int = Field(default=0, description="Response code")
    message: str = Field(default="success", description="Response message")
    data: list[T] = Field(default_factory=list, description="Items on this page")
    total: int = Field(default=0, ge=0, description="Total count before paging")
    page: int = Field(default=1, ge=1, description="Current page")
    page_size: int = Field(default=20, ge=1, le=100, description="Page size")

    @classmethod
    def from_items(cls, items: list[T], pagination: PaginationParams) -> "PaginatedResponse[T]":
        """Slice an in-memory listing down to the requested page."""
        start = pagination.offset
        return cls(
            data=items[start : start + pagination.page_size],
            total=len(items),
            page=pagination.page,
            page_size=pagination.page_size,
        )

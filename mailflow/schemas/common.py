"""Response envelopes and pagination shared by every API route."""

from collections.abc import Sequence
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    """Envelope of every JSON response; errors reuse it with the HTTP status as ``code``."""

    code: int = Field(default=0, description="0 on success, HTTP status on error")
    message: str = Field(default="success", description="Human readable outcome")
    data: T | None = Field(default=None, description="Payload")


class PaginationParams(BaseModel):
    """Page selection from the ``page`` / ``page_size`` query parameters."""

    page: int = Field(default=1, ge=1, description="Page number")
    page_size: int = Field(default=20, ge=1, le=100, description="Items per page")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def slice(self, items: Sequence[T]) -> list[T]:
        """The current page of an already loaded, ordered sequence."""
        return list(items[self.offset:self.offset + self.page_size])


class PaginatedResponse(BaseModel, Generic[T]):
    """Envelope of a page of items."""

    code: int = Field(default=0)
    message: str = Field(default="success")
    data: list[T] = Field(default_factory=list, description="Items of the current page")
    total: int = Field(default=0, ge=0, description="Items across all pages")
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
    has_more: bool = Field(default=False, description="Whether a later page exists")

    @classmethod
    def build(cls, items: list[T], total: int, pagination: PaginationParams) -> "PaginatedResponse[T]":
        return cls(
            data=items,
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
            has_more=pagination.offset + len(items) < total,
        )

"""Segment API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from mailflow.models.segment import Condition, LogicalOperator
from mailflow.models.subscriber import SubscriberStatus


class SegmentCreate(BaseModel):
    """Schema for creating a segment."""

    tenant_id: str = Field(..., min_length=1, description="Owning tenant")
    name: str = Field(..., min_length=1, max_length=200, description="Segment name")
    description: str = Field(default="", max_length=1000)
    conditions: list[Condition] = Field(default_factory=list)
    logical_operator: LogicalOperator = Field(default=LogicalOperator.AND)


class SegmentUpdate(BaseModel):
    """Schema for partially updating a segment."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    conditions: list[Condition] | None = None
    logical_operator: LogicalOperator | None = None
    active: bool | None = None


class SegmentPreview(BaseModel):
    """Schema for previewing an unsaved condition set."""

    tenant_id: str = Field(..., min_length=1)
    conditions: list[Condition] = Field(default_factory=list)
    logical_operator: LogicalOperator = Field(default=LogicalOperator.AND)
    limit: int = Field(default=10, ge=1, le=100, description="Sample size")


class SegmentFromTemplate(BaseModel):
    """Schema for creating a segment from a built-in template."""

    tenant_id: str = Field(..., min_length=1)
    template_name: str = Field(..., description="Built-in template name")
    name: str | None = Field(default=None, description="Custom segment name")


class SegmentResponse(BaseModel):
    """Schema for segment response."""

    segment_id: str
    tenant_id: str
    name: str
    description: str
    conditions: list[Condition]
    logical_operator: LogicalOperator
    active: bool
    subscriber_count: int
    last_calculated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class SubscriberSummary(BaseModel):
    """Subscriber row as listed in an audience."""

    subscriber_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    status: SubscriberStatus
    created_at: datetime


class AudiencePage(BaseModel):
    """Audience sample or page."""

    subscribers: list[SubscriberSummary]
    total: int
    has_more: bool


class FieldResponse(BaseModel):
    """Field catalog entry."""

    id: str
    name: str
    type: str
    description: str
    operators: list[str]
    options: list[str] = Field(default_factory=list)


class TemplateResponse(BaseModel):
    """Built-in segment template."""

    name: str
    display_name: str
    logical_operator: LogicalOperator
    conditions: list[Condition]


class RecalculateResponse(BaseModel):
    """Recomputed audience size."""

    segment_id: str
    subscriber_count: int


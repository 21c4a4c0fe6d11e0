"""Segment domain models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from mailflow.core.timeutil import utcnow


class LogicalOperator(str, Enum):
    """Operator combining every condition of a segment or branch."""

    AND = "AND"
    OR = "OR"


class Condition(BaseModel):
    """One field/operator/value clause."""

    field: str = Field(..., description="Field id from the field catalog")
    operator: str = Field(..., description="Comparison operator")
    value: Any = Field(default=None, description="Comparison value, omitted for null checks")
    logical_operator: LogicalOperator | None = Field(
        default=None,
        description="Accepted for stored templates; segments combine conditions flatly",
    )


class SegmentDefinition(BaseModel):
    """Saved audience filter."""

    segment_id: str = Field(..., description="Segment unique identifier")
    tenant_id: str = Field(..., description="Owning tenant")
    name: str = Field(..., description="Segment name")
    description: str = Field(default="", description="Segment description")
    conditions: list[Condition] = Field(default_factory=list)
    logical_operator: LogicalOperator = Field(default=LogicalOperator.AND)
    active: bool = Field(default=True, description="Whether the segment is active")
    subscriber_count: int = Field(default=0, ge=0, description="Cached audience size")
    last_calculated_at: datetime | None = Field(
        default=None,
        description="When subscriber_count was last recomputed",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

"""Event domain models."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from mailflow.core.timeutil import ensure_utc, utcnow
from mailflow.models.automation import TriggerKind


class Event(BaseModel):
    """Trigger-worthy event produced by signup/purchase hooks or the scheduler."""

    event_id: str = Field(
        default_factory=lambda: f"evt_{uuid.uuid4().hex}",
        description="Event unique identifier for idempotency",
    )
    tenant_id: str = Field(..., min_length=1, description="Tenant the event belongs to")
    subscriber_id: str | None = Field(default=None, description="Subscriber the event concerns")
    trigger_type: TriggerKind = Field(..., description="Trigger kind the producer emits")
    timestamp: datetime = Field(default_factory=utcnow, description="Event timestamp")
    data: dict[str, Any] = Field(default_factory=dict, description="Event payload data")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class TriggerContext(BaseModel):
    """Inputs a trigger predicate is evaluated against."""

    tenant_id: str
    subscriber_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_event(cls, event: Event) -> "TriggerContext":
        """Build the trigger context for an inbound event."""
        return cls(
            tenant_id=event.tenant_id,
            subscriber_id=event.subscriber_id,
            data=event.data,
            timestamp=event.timestamp,
        )

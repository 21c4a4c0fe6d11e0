"""Subscriber and template models.

Subscribers are owned by the surrounding platform; the engine reads them for
personalization, branching and segmentation and applies the mutations that
automation actions request.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from mailflow.core.timeutil import utcnow


class SubscriberStatus(str, Enum):
    """Subscriber status."""

    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    PENDING = "pending"


class Subscriber(BaseModel):
    """Subscriber profile with engagement counters."""

    subscriber_id: str
    tenant_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    status: SubscriberStatus = SubscriberStatus.ACTIVE
    source: str | None = None
    birthday: str | None = None

    tags: list[str] = Field(default_factory=list)
    lists: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    country: str | None = None
    region: str | None = None
    city: str | None = None

    subscribed_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    # Engagement counters
    bounce_count: int = 0
    complaint_count: int = 0
    product_views: int | None = None
    cart_abandonment_count: int | None = None
    purchase_count: int | None = None
    total_spent: float | None = None
    average_order_value: float | None = None
    last_purchase_date: datetime | None = None
    favorite_category: str | None = None
    lifecycle_stage: str | None = None

    # Aggregated from message event history
    analytics: dict[str, Any] = Field(default_factory=dict)


# Profile attributes update_field may set directly; other names go to custom_fields
WRITABLE_PROFILE_FIELDS = frozenset({
    "first_name",
    "last_name",
    "source",
    "birthday",
    "country",
    "region",
    "city",
    "favorite_category",
    "lifecycle_stage",
})


class EmailTemplate(BaseModel):
    """Tenant-scoped message template."""

    template_id: str
    tenant_id: str
    name: str = ""
    subject: str = ""
    html_content: str
    text_content: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

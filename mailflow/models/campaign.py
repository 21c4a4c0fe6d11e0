"""Campaign domain models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from mailflow.core.timeutil import utcnow


class CampaignStatus(str, Enum):
    """Campaign status."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    TESTING = "testing"  # A/B variants sent, winner pending
    SENT = "sent"
    PAUSED = "paused"
    FAILED = "failed"


class Variant(BaseModel):
    """A/B test variant."""

    name: str = Field(..., min_length=1)
    subject: str
    html_content: str
    percentage: float = Field(..., ge=0, le=100)


class ABTestConfig(BaseModel):
    """A/B test configuration."""

    enabled: bool = True
    test_percentage: float = Field(..., ge=0, le=100, description="Share of the audience in the test")
    variants: list[Variant] = Field(..., min_length=2)
    winner_wait_hours: int | None = Field(
        default=None,
        ge=1,
        description="Hours before the winner goes to the remainder",
    )

    @model_validator(mode="after")
    def validate_percentages(self) -> "ABTestConfig":
        """Variant percentages must total 100."""
        total = sum(variant.percentage for variant in self.variants)
        if abs(total - 100) > 1e-6:
            raise ValueError("A/B test variant percentages must total 100%")
        names = [variant.name for variant in self.variants]
        if len(set(names)) != len(names):
            raise ValueError("A/B test variant names must be unique")
        return self


class CampaignStats(BaseModel):
    """Send counters."""

    total: int = 0
    sent: int = 0
    failed: int = 0


class Campaign(BaseModel):
    """One-off broadcast to a segment-defined audience."""

    campaign_id: str
    tenant_id: str
    name: str
    subject: str
    html_content: str
    text_content: str = ""
    status: CampaignStatus = CampaignStatus.DRAFT
    segment_ids: list[str] = Field(default_factory=list)
    ab_test: ABTestConfig | None = None
    stats: CampaignStats = Field(default_factory=CampaignStats)
    winner: str | None = Field(default=None, description="Winning variant once decided")
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: datetime | None = None


class VariantResult(BaseModel):
    """Measured performance of one variant."""

    variant: str
    sent: int = 0
    open_rate: float = 0.0
    click_rate: float = 0.0
    conversion_rate: float = 0.0
    is_winner: bool = False
    confidence: float = 0.0


class DispatchResult(BaseModel):
    """Outcome of a campaign send."""

    success: bool
    sent: int = 0
    failed: int = 0
    error: str | None = None
    remaining: int = Field(default=0, description="Recipients awaiting the A/B winner")
    variant_results: list[VariantResult] = Field(default_factory=list)

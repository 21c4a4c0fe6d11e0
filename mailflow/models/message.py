"""Outbound message models exchanged with the delivery collaborator."""

from typing import Any

from pydantic import BaseModel, Field


class OutboundMessage(BaseModel):
    """Message handed to a delivery channel."""

    to: str = Field(..., description="Recipient address")
    subject: str = Field(..., description="Personalized subject")
    html: str = Field(..., description="Personalized HTML body")
    text: str = Field(default="", description="Personalized plain text body")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Tracking identifiers (tenant, automation, execution, campaign, variant)",
    )


class DeliveryResult(BaseModel):
    """Result reported by a delivery channel."""

    success: bool
    message_id: str | None = None
    error: str | None = None

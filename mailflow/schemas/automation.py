"""Automation and execution API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from mailflow.models.automation import ActionSpec, AutomationMetadata, TriggerSpec
from mailflow.models.execution import ExecutionStatus


class AutomationCreate(BaseModel):
    """Schema for creating an automation."""

    tenant_id: str = Field(..., min_length=1, description="Owning tenant")
    name: str = Field(..., min_length=1, max_length=200, description="Automation name")
    description: str = Field(default="", max_length=1000, description="Automation description")
    active: bool = Field(default=True, description="Whether new executions may start")
    trigger: TriggerSpec = Field(..., description="Trigger configuration")
    actions: list[ActionSpec] = Field(..., min_length=1, description="Ordered actions")


class AutomationUpdate(BaseModel):
    """Schema for partially updating an automation."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    active: bool | None = None
    trigger: TriggerSpec | None = None
    actions: list[ActionSpec] | None = Field(default=None, min_length=1)


class AutomationStatusUpdate(BaseModel):
    """Schema for activating or deactivating an automation."""

    active: bool = Field(..., description="Whether the automation is active")


class AutomationResponse(BaseModel):
    """Schema for automation response."""

    automation_id: str
    tenant_id: str
    name: str
    description: str
    active: bool
    trigger: TriggerSpec
    actions: list[ActionSpec]
    metadata: AutomationMetadata


class AutomationCreateResponse(BaseModel):
    """Schema for automation creation response."""

    automation_id: str = Field(..., description="Created automation ID")
    version: int = Field(..., description="Definition version")
    created_at: datetime = Field(..., description="Creation timestamp")


class ExecutionSummary(BaseModel):
    """Execution without its step log."""

    execution_id: str
    automation_id: str
    automation_version: int
    subscriber_id: str
    status: ExecutionStatus
    current_step: int
    next_action_at: datetime | None = None
    error: str | None = None
    failed_step: int | None = None
    cancel_reason: str | None = None
    created_at: datetime
    finished_at: datetime | None = None


class ExecutionCancel(BaseModel):
    """Schema for cancelling an execution."""

    reason: str = Field(default="cancelled", max_length=200, description="Cancellation reason")


class AutomationStatsResponse(BaseModel):
    """Execution counts for one automation."""

    automation_id: str
    total: int
    active: int
    completed: int
    failed: int
    cancelled: int
    completion_rate: float

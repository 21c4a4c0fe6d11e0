"""Execution domain models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from mailflow.core.timeutil import utcnow


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.ACTIVE


class StepLogEntry(BaseModel):
    """Outcome of one executed step."""

    step: int = Field(..., ge=0, description="Zero-based action index")
    action_kind: str = Field(..., description="Action kind that ran")
    success: bool = Field(..., description="Whether the action succeeded")
    error: str | None = Field(default=None, description="Failure reason")
    data: dict[str, Any] | None = Field(default=None, description="Action output")
    timestamp: datetime = Field(default_factory=utcnow)


class Execution(BaseModel):
    """One running instance of an automation for one subscriber."""

    execution_id: str = Field(..., description="Execution unique identifier")
    automation_id: str = Field(..., description="Automation being executed")
    automation_version: int = Field(default=1, ge=1, description="Definition version in use")
    tenant_id: str = Field(..., description="Owning tenant")
    subscriber_id: str = Field(..., description="Subscriber the execution runs for")
    status: ExecutionStatus = Field(default=ExecutionStatus.ACTIVE)
    current_step: int = Field(default=0, ge=0, description="Next action index to run")
    trigger_data: dict[str, Any] = Field(default_factory=dict, description="Trigger payload snapshot")
    next_action_at: datetime | None = Field(default=None, description="When the execution is due")
    error: str | None = Field(default=None, description="Failure reason")
    failed_step: int | None = Field(default=None, description="Step that failed")
    cancel_reason: str | None = Field(default=None, description="Why the execution was cancelled")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = Field(default=None)
    step_log: list[StepLogEntry] = Field(default_factory=list, description="Ordered step outcomes")


class AutomationStats(BaseModel):
    """Execution counts for one automation."""

    automation_id: str
    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def completion_rate(self) -> float:
        """Completed executions as a percentage of all executions."""
        if self.total == 0:
            return 0.0
        return self.completed / self.total * 100

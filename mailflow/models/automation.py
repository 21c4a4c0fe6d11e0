"""Automation definition domain models."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field

from mailflow.core.timeutil import utcnow
from mailflow.models.segment import LogicalOperator


class TriggerKind(str, Enum):
    """Supported trigger kinds."""

    SIGNUP = "user_signup"
    PURCHASE = "product_purchase"
    CART_ABANDONMENT = "cart_abandonment"
    INACTIVITY = "user_inactive"
    BIRTHDAY = "birthday"
    PRODUCT_VIEW = "product_view"
    TIME_BASED = "time_based"
    GENERIC_EVENT = "api_trigger"


class ActionKind(str, Enum):
    """Supported action kinds."""

    SEND_EMAIL = "send_email"
    ADD_TO_LIST = "add_to_list"
    REMOVE_FROM_LIST = "remove_from_list"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    WAIT = "wait"
    CONDITION = "condition"


class StepKind(str, Enum):
    """Structural role of an action within the step loop."""

    SEND = "send"
    MUTATE = "mutate"
    WAIT = "wait"
    BRANCH = "branch"


class DelayUnit(str, Enum):
    """Delay units."""

    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


UNIT_MINUTES: dict[str, int] = {
    DelayUnit.MINUTES.value: 1,
    DelayUnit.HOURS.value: 60,
    DelayUnit.DAYS.value: 60 * 24,
    DelayUnit.WEEKS.value: 60 * 24 * 7,
}


class Delay(BaseModel):
    """Explicit delay applied after an action succeeds."""

    amount: float = Field(..., gt=0, description="Delay amount")
    unit: DelayUnit = Field(..., description="Delay unit")

    def to_minutes(self) -> float:
        return self.amount * UNIT_MINUTES[self.unit.value]


class TriggerSpec(BaseModel):
    """Trigger configuration."""

    type: TriggerKind = Field(..., description="Trigger kind")
    conditions: dict[str, Any] = Field(
        default_factory=dict,
        description="Kind-specific trigger conditions",
    )


class CustomContent(BaseModel):
    """Inline message content used instead of a template."""

    html: str = Field(..., description="HTML body")
    text: str | None = Field(default=None, description="Plain text body")


class BranchCondition(BaseModel):
    """Sub-predicate evaluated against current subscriber state."""

    field: str = Field(..., description="Subscriber field path, e.g. 'custom_fields.plan'")
    operator: str = Field(..., description="Comparison operator")
    value: Any = Field(default=None, description="Comparison value")


class _ActionBase(BaseModel):
    step_kind: ClassVar[StepKind]

    delay: Delay | None = Field(default=None, description="Delay before the next action")


class SendEmailAction(_ActionBase):
    """Send a templated or custom message to the subscriber."""

    step_kind: ClassVar[StepKind] = StepKind.SEND

    type: Literal["send_email"] = "send_email"
    template_id: str | None = Field(default=None, description="Template to render")
    subject: str | None = Field(default=None, description="Subject, overrides the template subject")
    custom_content: CustomContent | None = Field(default=None, description="Inline content")


class ListAction(_ActionBase):
    """Add the subscriber to, or remove them from, a list."""

    step_kind: ClassVar[StepKind] = StepKind.MUTATE

    type: Literal["add_to_list", "remove_from_list"]
    list_id: str | None = Field(default=None, description="Target list")


class TagAction(_ActionBase):
    """Add or remove a subscriber tag."""

    step_kind: ClassVar[StepKind] = StepKind.MUTATE

    type: Literal["add_tag", "remove_tag"]
    tag: str | None = Field(default=None, description="Tag name")


class UpdateFieldAction(_ActionBase):
    """Set a subscriber profile or custom field."""

    step_kind: ClassVar[StepKind] = StepKind.MUTATE

    type: Literal["update_field"] = "update_field"
    field: str | None = Field(default=None, description="Field name")
    value: Any = Field(default=None, description="New value")


class WaitAction(_ActionBase):
    """Pure delay; unit is checked when the step runs."""

    step_kind: ClassVar[StepKind] = StepKind.WAIT

    type: Literal["wait"] = "wait"
    amount: float | None = Field(default=None, description="Wait amount")
    unit: str | None = Field(default=None, description="minutes, hours, days or weeks")


class ConditionAction(_ActionBase):
    """Branch: stop the execution when the predicate is false."""

    step_kind: ClassVar[StepKind] = StepKind.BRANCH

    type: Literal["condition"] = "condition"
    conditions: list[BranchCondition] = Field(default_factory=list)
    operator: LogicalOperator = Field(default=LogicalOperator.AND)


ActionSpec = Annotated[
    Union[
        SendEmailAction,
        ListAction,
        TagAction,
        UpdateFieldAction,
        WaitAction,
        ConditionAction,
    ],
    Field(discriminator="type"),
]


class AutomationMetadata(BaseModel):
    """Automation metadata."""

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    created_by: str = Field(default="system")
    version: int = Field(default=1, ge=1)


class Automation(BaseModel):
    """Tenant-defined trigger plus ordered action sequence."""

    automation_id: str = Field(..., description="Automation unique identifier")
    tenant_id: str = Field(..., description="Owning tenant")
    name: str = Field(..., description="Automation name")
    description: str = Field(default="", description="Automation description")
    active: bool = Field(default=True, description="Whether new executions may start")
    trigger: TriggerSpec = Field(..., description="Trigger configuration")
    actions: list[ActionSpec] = Field(default_factory=list, description="Ordered actions")
    metadata: AutomationMetadata = Field(default_factory=AutomationMetadata)

    @property
    def version(self) -> int:
        return self.metadata.version

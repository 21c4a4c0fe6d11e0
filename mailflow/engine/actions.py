"""Action execution for automation steps.

Each action kind has one handler in an explicit table. Handlers return an
:class:`ActionResult`; expected failures (missing subscriber or template,
missing identifiers, delivery problems) become ``success=False`` results
instead of exceptions. Only an unknown action kind raises.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from mailflow.core.errors import ConfigurationError, DeliveryError, NotFoundError, ValidationError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import utcnow
from mailflow.delivery.base import DeliveryChannel
from mailflow.engine.conditions import evaluate_condition, lookup_field
from mailflow.engine.personalize import build_tokens, personalize
from mailflow.models.automation import (
    UNIT_MINUTES,
    ActionKind,
    ConditionAction,
    ListAction,
    SendEmailAction,
    TagAction,
    UpdateFieldAction,
    WaitAction,
)
from mailflow.models.message import OutboundMessage
from mailflow.models.segment import LogicalOperator
from mailflow.observability.metrics import MESSAGES_SENT
from mailflow.storage.subscriber_store import SubscriberStore
from mailflow.storage.template_store import TemplateStore

logger = get_logger(__name__)


@dataclass
class ActionContext:
    """Identity and inputs of the step being executed."""

    tenant_id: str
    subscriber_id: str
    automation_id: str
    execution_id: str
    trigger_data: dict[str, Any] = field(default_factory=dict)
    now: datetime = field(default_factory=utcnow)


@dataclass
class ActionResult:
    """Outcome of one action."""

    success: bool
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    next_delay_minutes: float | None = None

    @property
    def condition_met(self) -> bool:
        """Branch verdict; non-branch results always continue."""
        return bool(self.data.get("condition_met", True))

    @classmethod
    def failure(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error)


ActionHandler = Callable[[ActionContext, Any], Awaitable[ActionResult]]


class ActionExecutor:
    """Runs one automation action against subscriber state."""

    def __init__(
        self,
        subscribers: SubscriberStore,
        templates: TemplateStore,
        delivery: DeliveryChannel | None = None,
    ):
        """Initialize executor.

        Args:
            subscribers: Subscriber repository
            templates: Template repository
            delivery: Delivery channel; sends fail while it is missing
        """
        self._subscribers = subscribers
        self._templates = templates
        self._delivery = delivery
        self._handlers: dict[ActionKind, ActionHandler] = {
            ActionKind.SEND_EMAIL: self._send_email,
            ActionKind.ADD_TO_LIST: self._add_to_list,
            ActionKind.REMOVE_FROM_LIST: self._remove_from_list,
            ActionKind.ADD_TAG: self._add_tag,
            ActionKind.REMOVE_TAG: self._remove_tag,
            ActionKind.UPDATE_FIELD: self._update_field,
            ActionKind.WAIT: self._wait,
            ActionKind.CONDITION: self._condition,
        }
        missing = [kind.value for kind in ActionKind if kind not in self._handlers]
        if missing:
            raise ConfigurationError(f"No action handler registered for: {', '.join(missing)}")

    async def execute(self, context: ActionContext, action: Any) -> ActionResult:
        """Execute one action.

        Args:
            context: Step context
            action: Action definition

        Returns:
            Structured result

        Raises:
            ConfigurationError: If the action kind is unknown
        """
        raw_kind = getattr(action, "type", None)
        try:
            kind = ActionKind(raw_kind)
        except ValueError:
            raise ConfigurationError(f"Unknown action type: {raw_kind}") from None

        handler = self._handlers[kind]

        try:
            return await handler(context, action)
        except (NotFoundError, ValidationError, DeliveryError) as e:
            logger.warning(
                "Action failed",
                action_type=kind.value,
                execution_id=context.execution_id,
                error=str(e),
            )
            return ActionResult.failure(str(e))

    async def _send_email(self, context: ActionContext, action: SendEmailAction) -> ActionResult:
        subscriber = await self._subscribers.get(context.tenant_id, context.subscriber_id)
        if subscriber is None:
            raise NotFoundError("Subscriber not found")

        if action.template_id:
            template = await self._templates.get(context.tenant_id, action.template_id)
            if template is None:
                raise NotFoundError("Template not found")
            subject = action.subject or template.subject
            html = template.html_content
            text = template.text_content or ""
        elif action.custom_content:
            subject = action.subject or ""
            html = action.custom_content.html
            text = action.custom_content.text or ""
        else:
            raise ValidationError("No email content specified")

        if self._delivery is None:
            raise DeliveryError("Delivery not configured")

        tokens = build_tokens(subscriber, context.trigger_data)
        message = OutboundMessage(
            to=subscriber.email,
            subject=personalize(subject, tokens),
            html=personalize(html, tokens),
            text=personalize(text, tokens),
            metadata={
                "tenant_id": context.tenant_id,
                "subscriber_id": context.subscriber_id,
                "automation_id": context.automation_id,
                "execution_id": context.execution_id,
                "template_id": action.template_id,
            },
        )

        result = await self._delivery.send(message)
        MESSAGES_SENT.labels(source="automation", status="sent" if result.success else "rejected").inc()
        if not result.success:
            return ActionResult.failure(result.error or "Delivery rejected")

        return ActionResult(
            success=True,
            data={"message_id": result.message_id, "template_id": action.template_id},
        )

    async def _add_to_list(self, context: ActionContext, action: ListAction) -> ActionResult:
        if not action.list_id:
            raise ValidationError("List ID is required")
        await self._subscribers.add_to_list(context.tenant_id, context.subscriber_id, action.list_id)
        return ActionResult(success=True, data={"list_id": action.list_id})

    async def _remove_from_list(self, context: ActionContext, action: ListAction) -> ActionResult:
        if not action.list_id:
            raise ValidationError("List ID is required")
        await self._subscribers.remove_from_list(context.tenant_id, context.subscriber_id, action.list_id)
        return ActionResult(success=True, data={"list_id": action.list_id})

    async def _add_tag(self, context: ActionContext, action: TagAction) -> ActionResult:
        if not action.tag:
            raise ValidationError("Tag is required")
        await self._subscribers.add_tag(context.tenant_id, context.subscriber_id, action.tag)
        return ActionResult(success=True, data={"tag": action.tag})

    async def _remove_tag(self, context: ActionContext, action: TagAction) -> ActionResult:
        if not action.tag:
            raise ValidationError("Tag is required")
        await self._subscribers.remove_tag(context.tenant_id, context.subscriber_id, action.tag)
        return ActionResult(success=True, data={"tag": action.tag})

    async def _update_field(self, context: ActionContext, action: UpdateFieldAction) -> ActionResult:
        if not action.field:
            raise ValidationError("Field name is required")
        await self._subscribers.update_field(
            context.tenant_id,
            context.subscriber_id,
            action.field,
            action.value,
        )
        return ActionResult(success=True, data={"field": action.field, "value": action.value})

    async def _wait(self, context: ActionContext, action: WaitAction) -> ActionResult:
        if action.amount is None or action.amount <= 0:
            return ActionResult.failure("Wait amount must be positive")
        if action.unit not in UNIT_MINUTES:
            return ActionResult.failure(f"Invalid wait unit: {action.unit}")

        minutes = action.amount * UNIT_MINUTES[action.unit]
        return ActionResult(success=True, data={"wait_minutes": minutes}, next_delay_minutes=minutes)

    async def _condition(self, context: ActionContext, action: ConditionAction) -> ActionResult:
        if not action.conditions:
            return ActionResult(success=True, data={"condition_met": True, "evaluated": 0})

        subscriber = await self._subscribers.get(context.tenant_id, context.subscriber_id)

        results = []
        for condition in action.conditions:
            if subscriber is None:
                results.append(False)
                continue
            actual = lookup_field(subscriber, condition.field)
            try:
                results.append(evaluate_condition(actual, condition.operator, condition.value, context.now))
            except ValueError as e:
                logger.warning(
                    "Invalid branch condition",
                    execution_id=context.execution_id,
                    field=condition.field,
                    operator=condition.operator,
                    error=str(e),
                )
                results.append(False)

        met = any(results) if action.operator is LogicalOperator.OR else all(results)
        return ActionResult(success=True, data={"condition_met": met, "evaluated": len(results)})

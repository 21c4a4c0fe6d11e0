"""Trigger predicates deciding whether an inbound event starts an automation.

Every predicate is a plain function of ``(context, conditions)``. Missing
context fields mean "no match"; malformed conditions surface as
``TypeError``/``ValueError``/``KeyError``/``AttributeError`` and are turned
into "no match" by :class:`TriggerEvaluator`.
"""

import math
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Callable
from zoneinfo import ZoneInfo

from simpleeval import simple_eval

from mailflow.core.errors import ConfigurationError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import parse_datetime
from mailflow.models.automation import TriggerKind
from mailflow.models.event import TriggerContext
from mailflow.observability.metrics import TRIGGER_EVALUATIONS

logger = get_logger(__name__)

TriggerPredicate = Callable[[TriggerContext, Mapping[str, Any]], bool]

DEFAULT_MIN_ABANDON_MINUTES = 60
DEFAULT_INACTIVE_DAYS = 30

# Functions available to generic-event expressions
EXPRESSION_FUNCTIONS = {
    "abs": abs,
    "min": min,
    "max": max,
    "len": len,
    "round": round,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
}


def _number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("Boolean is not a numeric threshold")
    return float(value)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _flatten(data: Mapping[str, Any], parent_key: str = "") -> dict[str, Any]:
    """Flatten nested payloads so ``cart.total`` is reachable as ``cart_total``."""
    items: dict[str, Any] = {}
    for key, value in data.items():
        flat_key = f"{parent_key}_{key}" if parent_key else str(key)
        if isinstance(value, Mapping):
            items.update(_flatten(value, flat_key))
        items[flat_key] = value
    return items


def evaluate_expression(expression: str, data: Mapping[str, Any]) -> bool:
    """Safely evaluate a boolean expression over event data.

    Raises:
        ValueError: If the expression is invalid or references unknown names
    """
    try:
        return bool(simple_eval(expression, names=_flatten(data), functions=EXPRESSION_FUNCTIONS))
    except Exception as e:
        raise ValueError(f"Invalid expression: {expression}") from e


def evaluate_signup(context: TriggerContext, conditions: Mapping[str, Any]) -> bool:
    if not context.subscriber_id:
        return False

    source = conditions.get("source", "any")
    if source in (None, "", "any"):
        return True
    return context.data.get("source") == source


def evaluate_purchase(context: TriggerContext, conditions: Mapping[str, Any]) -> bool:
    purchase = context.data.get("purchase")
    if not isinstance(purchase, Mapping):
        return False

    items = _as_list(purchase.get("items"))

    product_ids = _as_list(conditions.get("product_ids"))
    if product_ids:
        purchased = {item.get("product_id") for item in items}
        if not any(product_id in purchased for product_id in product_ids):
            return False

    categories = _as_list(conditions.get("categories"))
    if categories:
        purchased_categories = {item.get("category") for item in items}
        if not any(category in purchased_categories for category in categories):
            return False

    min_amount = conditions.get("min_amount")
    if min_amount:
        total = purchase.get("total")
        if total is None or _number(total) < _number(min_amount):
            return False

    return True


def evaluate_cart_abandonment(context: TriggerContext, conditions: Mapping[str, Any]) -> bool:
    cart = context.data.get("cart")
    if not isinstance(cart, Mapping) or cart.get("abandoned_at") is None:
        return False

    min_cart_value = conditions.get("min_cart_value")
    if min_cart_value and _number(cart.get("total") or 0) < _number(min_cart_value):
        return False

    min_minutes = conditions.get("min_abandon_minutes", DEFAULT_MIN_ABANDON_MINUTES)
    abandoned_at = parse_datetime(cart["abandoned_at"])
    elapsed_minutes = (context.timestamp - abandoned_at).total_seconds() / 60
    return elapsed_minutes >= _number(min_minutes)


def evaluate_inactivity(context: TriggerContext, conditions: Mapping[str, Any]) -> bool:
    if not context.subscriber_id:
        return False

    last_active_at = context.data.get("last_active_at")
    if last_active_at is None:
        return False

    inactive_days = conditions.get("inactive_days", DEFAULT_INACTIVE_DAYS)
    elapsed = context.timestamp - parse_datetime(last_active_at)
    days_since_active = math.floor(elapsed.total_seconds() / 86400)
    return days_since_active >= _number(inactive_days)


def _birthday_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        # Only the calendar part matters; ignore any time or offset
        return date.fromisoformat(value.strip()[:10])
    raise TypeError(f"Unsupported birthday value: {value!r}")


def evaluate_birthday(context: TriggerContext, conditions: Mapping[str, Any]) -> bool:
    birthday = context.data.get("birthday")
    if not birthday:
        return False

    born = _birthday_date(birthday)
    today = context.timestamp
    return born.month == today.month and born.day == today.day


def evaluate_product_view(context: TriggerContext, conditions: Mapping[str, Any]) -> bool:
    product_id = context.data.get("product_id")
    if product_id is None:
        return False

    product_ids = _as_list(conditions.get("product_ids"))
    if product_ids and product_id not in product_ids:
        return False

    categories = _as_list(conditions.get("categories"))
    if categories and context.data.get("category") not in categories:
        return False

    min_view_count = conditions.get("min_view_count")
    if min_view_count:
        view_count = context.data.get("view_count") or 1
        if _number(view_count) < _number(min_view_count):
            return False

    return True


def evaluate_time_based(context: TriggerContext, conditions: Mapping[str, Any]) -> bool:
    zone = ZoneInfo(conditions.get("timezone") or "UTC")
    local = context.timestamp.astimezone(zone)

    day_of_week = conditions.get("day_of_week")
    if day_of_week is not None:
        # 0 = Sunday, as in cron
        if (local.weekday() + 1) % 7 != int(day_of_week):
            return False

    hour = conditions.get("hour")
    if hour is not None and local.hour != int(hour):
        return False

    return True


def evaluate_generic_event(context: TriggerContext, conditions: Mapping[str, Any]) -> bool:
    for field in _as_list(conditions.get("required_fields")):
        if not context.data.get(field):
            return False

    expression = conditions.get("expression")
    if expression:
        return evaluate_expression(expression, context.data)

    return True


def build_trigger_table() -> dict[TriggerKind, TriggerPredicate]:
    """Registration table mapping each trigger kind to its predicate."""
    return {
        TriggerKind.SIGNUP: evaluate_signup,
        TriggerKind.PURCHASE: evaluate_purchase,
        TriggerKind.CART_ABANDONMENT: evaluate_cart_abandonment,
        TriggerKind.INACTIVITY: evaluate_inactivity,
        TriggerKind.BIRTHDAY: evaluate_birthday,
        TriggerKind.PRODUCT_VIEW: evaluate_product_view,
        TriggerKind.TIME_BASED: evaluate_time_based,
        TriggerKind.GENERIC_EVENT: evaluate_generic_event,
    }


class TriggerEvaluator:
    """Single dispatch point over the trigger registration table."""

    def __init__(self, table: Mapping[TriggerKind, TriggerPredicate] | None = None):
        """Initialize evaluator.

        Args:
            table: Trigger table; defaults to :func:`build_trigger_table`

        Raises:
            ConfigurationError: If a trigger kind has no predicate
        """
        self._table = dict(table if table is not None else build_trigger_table())
        missing = [kind.value for kind in TriggerKind if kind not in self._table]
        if missing:
            raise ConfigurationError(f"No trigger predicate registered for: {', '.join(missing)}")

    @property
    def supported_kinds(self) -> list[TriggerKind]:
        return list(self._table)

    def evaluate(
        self,
        kind: TriggerKind | str,
        context: TriggerContext,
        conditions: Mapping[str, Any] | None,
    ) -> bool:
        """Decide whether an event matches a trigger.

        Args:
            kind: Trigger kind
            context: Event context
            conditions: Trigger conditions from the automation definition

        Returns:
            True if the automation should start

        Raises:
            ConfigurationError: If the trigger kind is unknown
        """
        try:
            kind = TriggerKind(kind)
        except ValueError:
            raise ConfigurationError(f"Unknown trigger type: {kind}") from None

        predicate = self._table[kind]

        try:
            matched = bool(predicate(context, conditions if conditions is not None else {}))
        except (TypeError, ValueError, KeyError, AttributeError, ArithmeticError) as e:
            logger.warning(
                "Malformed trigger input",
                trigger_type=kind.value,
                tenant_id=context.tenant_id,
                subscriber_id=context.subscriber_id,
                error=str(e),
            )
            TRIGGER_EVALUATIONS.labels(trigger_type=kind.value, result="malformed").inc()
            return False

        TRIGGER_EVALUATIONS.labels(
            trigger_type=kind.value,
            result="match" if matched else "no_match",
        ).inc()
        return matched

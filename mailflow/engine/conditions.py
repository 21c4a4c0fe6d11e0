"""Field/operator/value comparison shared by branch actions and segment matching."""

from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any

from mailflow.core.timeutil import is_relative, parse_datetime, resolve_relative


class Operator(str, Enum):
    """Condition operators."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


NULL_CHECK_OPERATORS = frozenset({Operator.IS_NULL, Operator.IS_NOT_NULL})


def resolve_value(value: Any, now: datetime) -> Any:
    """Resolve relative timestamps such as ``now-7d``; other values pass through."""
    if is_relative(value):
        return resolve_relative(value, now)
    return value


def lookup_field(record: Any, path: str) -> Any:
    """Read a dotted path (``custom_fields.plan``) from a model or mapping.

    Missing segments resolve to None.
    """
    current = record
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    if isinstance(current, Enum):
        return current.value
    return current


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, (datetime, date)):
        return parse_datetime(value)
    if isinstance(value, str):
        try:
            return parse_datetime(value)
        except ValueError:
            return None
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _coerce_pair(actual: Any, expected: Any) -> tuple[Any, Any] | None:
    """Bring both sides to a comparable type, dates before numbers."""
    if isinstance(actual, (datetime, date)) or isinstance(expected, (datetime, date)):
        left, right = _as_datetime(actual), _as_datetime(expected)
        if left is None or right is None:
            return None
        return left, right

    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return left, right

    return None


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return actual == expected
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.lower() == expected.lower()
    pair = _coerce_pair(actual, expected)
    if pair is not None:
        return pair[0] == pair[1]
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected).lower() in actual.lower()
    if isinstance(actual, Mapping):
        return expected in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    return False


def evaluate_condition(actual: Any, operator: Operator | str, expected: Any, now: datetime) -> bool:
    """Evaluate one clause against an already looked-up field value.

    Args:
        actual: Field value from the record (None when absent)
        operator: Comparison operator
        expected: Comparison value, may be relative (``now-30d``)
        now: Reference time for relative values

    Returns:
        Whether the clause holds. Type mismatches evaluate to False; a None
        field value only satisfies the null-check operators.

    Raises:
        ValueError: If the operator is unknown
    """
    operator = Operator(operator)

    if operator is Operator.IS_NULL:
        return actual is None
    if operator is Operator.IS_NOT_NULL:
        return actual is not None
    if actual is None:
        return False

    expected = resolve_value(expected, now)

    if operator is Operator.EQUALS:
        return _equals(actual, expected)
    if operator is Operator.NOT_EQUALS:
        return not _equals(actual, expected)
    if operator is Operator.CONTAINS:
        return _contains(actual, expected)
    if operator is Operator.NOT_CONTAINS:
        return not _contains(actual, expected)
    if operator is Operator.STARTS_WITH:
        return isinstance(actual, str) and actual.lower().startswith(str(expected).lower())
    if operator is Operator.ENDS_WITH:
        return isinstance(actual, str) and actual.lower().endswith(str(expected).lower())

    pair = _coerce_pair(actual, expected)
    if pair is None:
        return False
    left, right = pair
    if operator is Operator.GREATER_THAN:
        return left > right
    return left < right

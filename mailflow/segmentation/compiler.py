"""Segment condition validation and compilation.

``SegmentCompiler.compile`` turns a tenant id plus a flat list of conditions
into a :class:`CompiledSegment`: a backend-agnostic, immutable description of
the predicate. Renderers (:mod:`mailflow.segmentation.renderers`) turn it into
SQL or evaluate it in memory. Relative values such as ``now-30d`` are kept as
written and resolved by the renderer, so compiling the same input twice always
yields equal output.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Literal

from pydantic import ValidationError as PydanticValidationError

from mailflow.core.errors import ValidationError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import is_relative, parse_datetime
from mailflow.engine.conditions import NULL_CHECK_OPERATORS, Operator
from mailflow.models.segment import Condition, LogicalOperator
from mailflow.observability.metrics import SEGMENT_CONDITIONS_DROPPED
from mailflow.segmentation.catalog import DEFAULT_CATALOG, FieldCatalog, FieldType

logger = get_logger(__name__)

MALFORMED = "Malformed condition"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one condition."""

    is_valid: bool
    error: str | None = None


@dataclass(frozen=True)
class Predicate:
    """One validated field/operator/value clause."""

    field: str
    operator: Operator
    value: Any = None


@dataclass(frozen=True)
class DroppedCondition:
    """A condition left out of the compiled predicate."""

    index: int
    field: str
    operator: str
    error: str


@dataclass(frozen=True)
class SegmentQuery:
    """A compiled segment in rows or count form."""

    segment: "CompiledSegment"
    mode: Literal["rows", "count"]
    limit: int | None = None
    offset: int = 0


@dataclass(frozen=True)
class CompiledSegment:
    """Tenant-scoped predicate description.

    ``predicates`` are combined with the single ``logical_operator``. An empty
    tuple matches every subscriber of the tenant.
    """

    tenant_id: str
    logical_operator: LogicalOperator
    predicates: tuple[Predicate, ...]
    dropped: tuple[DroppedCondition, ...]
    catalog_version: str

    @property
    def matches_all(self) -> bool:
        return not self.predicates

    def rows(self, limit: int | None = None, offset: int = 0) -> SegmentQuery:
        """Rows form: subscriber ids, newest first."""
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        return SegmentQuery(segment=self, mode="rows", limit=limit, offset=offset)

    def count(self) -> SegmentQuery:
        """Count form over the identical predicate."""
        return SegmentQuery(segment=self, mode="count")


DEFAULT_PREDICATE = Predicate(field="status", operator=Operator.EQUALS, value="active")


def _freeze(value: Any) -> Any:
    if isinstance(value, list | tuple):
        return tuple(_freeze(v) for v in value)
    return value


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int | float):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def _is_date(value: Any) -> bool:
    if isinstance(value, datetime | date) or is_relative(value):
        return True
    if isinstance(value, str):
        try:
            parse_datetime(value)
        except ValueError:
            return False
        return True
    return False


def _is_boolean(value: Any) -> bool:
    return isinstance(value, bool) or (isinstance(value, str) and value.lower() in ("true", "false"))


def _parse(raw: Condition | Mapping[str, Any]) -> Condition | None:
    if isinstance(raw, Condition):
        return raw
    try:
        return Condition.model_validate(raw)
    except PydanticValidationError:
        return None


def _malformed(index: int, raw: Any) -> DroppedCondition:
    source = raw if isinstance(raw, Mapping) else {}
    return DroppedCondition(
        index=index,
        field=str(source.get("field") or ""),
        operator=str(source.get("operator") or ""),
        error=MALFORMED,
    )


class SegmentCompiler:
    """Validates and compiles segment conditions against a field catalog."""

    def __init__(self, catalog: FieldCatalog = DEFAULT_CATALOG):
        self.catalog = catalog

    def validate(self, condition: Condition | Mapping[str, Any]) -> ValidationResult:
        """Validate one condition.

        Args:
            condition: Condition or its mapping form

        Returns:
            ValidationResult with the first problem found
        """
        condition = _parse(condition)
        if condition is None:
            return ValidationResult(False, MALFORMED)

        field = self.catalog.get(condition.field)
        if field is None:
            return ValidationResult(False, "Invalid field")

        try:
            operator = Operator(condition.operator)
        except ValueError:
            return ValidationResult(False, "Invalid operator for field type")
        if not field.allows(operator):
            return ValidationResult(False, "Invalid operator for field type")

        if operator in NULL_CHECK_OPERATORS:
            return ValidationResult(True)

        value = condition.value
        if value is None or (value == "" and field.type is not FieldType.STRING):
            return ValidationResult(False, "Value is required")

        if field.type is FieldType.NUMBER and not _is_number(value):
            return ValidationResult(False, "Value must be a number")
        if field.type is FieldType.DATE and not _is_date(value):
            return ValidationResult(False, "Value must be a valid date")
        if field.type is FieldType.BOOLEAN and not _is_boolean(value):
            return ValidationResult(False, "Value must be true or false")

        return ValidationResult(True)

    def compile(
        self,
        tenant_id: str,
        conditions: Iterable[Condition | Mapping[str, Any]],
        logical_operator: LogicalOperator | str = LogicalOperator.AND,
    ) -> CompiledSegment:
        """Compile conditions into a tenant-scoped predicate.

        Invalid conditions are dropped and recorded rather than failing the
        whole compilation. With no conditions at all the segment defaults to
        active subscribers.

        Args:
            tenant_id: Tenant scope, always applied
            conditions: Ordered conditions
            logical_operator: Single operator joining every condition

        Returns:
            Compiled segment

        Raises:
            ValidationError: If the tenant id is empty
        """
        if not tenant_id:
            raise ValidationError("Tenant scope is required")

        logical_operator = LogicalOperator(logical_operator)
        conditions = list(conditions)

        if not conditions:
            return CompiledSegment(
                tenant_id=tenant_id,
                logical_operator=LogicalOperator.AND,
                predicates=(DEFAULT_PREDICATE,),
                dropped=(),
                catalog_version=self.catalog.version,
            )

        predicates: list[Predicate] = []
        dropped: list[DroppedCondition] = []
        for index, raw in enumerate(conditions):
            condition = _parse(raw)
            if condition is None:
                dropped.append(_malformed(index, raw))
                continue

            result = self.validate(condition)
            if not result.is_valid:
                dropped.append(
                    DroppedCondition(
                        index=index,
                        field=condition.field,
                        operator=str(condition.operator),
                        error=result.error or "invalid",
                    )
                )
                continue

            operator = Operator(condition.operator)
            value = None if operator in NULL_CHECK_OPERATORS else _freeze(condition.value)
            predicates.append(Predicate(field=condition.field, operator=operator, value=value))

        if dropped:
            SEGMENT_CONDITIONS_DROPPED.inc(len(dropped))
            logger.warning(
                "Dropped invalid segment conditions",
                tenant_id=tenant_id,
                dropped=[f"{d.field} {d.operator}: {d.error}" for d in dropped],
            )

        return CompiledSegment(
            tenant_id=tenant_id,
            logical_operator=logical_operator,
            predicates=tuple(predicates),
            dropped=tuple(dropped),
            catalog_version=self.catalog.version,
        )

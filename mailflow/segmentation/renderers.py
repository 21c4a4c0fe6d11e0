"""Backends for compiled segments: parameterized SQL and in-memory matching."""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from mailflow.core.timeutil import parse_datetime, utcnow
from mailflow.engine.conditions import Operator, evaluate_condition, lookup_field, resolve_value
from mailflow.models.segment import LogicalOperator
from mailflow.segmentation.catalog import (
    DEFAULT_CATALOG,
    SUBSCRIBER_TABLE,
    AggregateSource,
    FieldCatalog,
    FieldDefinition,
    FieldType,
)
from mailflow.segmentation.compiler import CompiledSegment, Predicate, SegmentQuery


@dataclass(frozen=True)
class RenderedQuery:
    """SQL text with positional parameters."""

    sql: str
    params: tuple[Any, ...]


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresRenderer:
    """Render compiled segments as PostgreSQL queries with ``$n`` placeholders."""

    def __init__(self, catalog: FieldCatalog = DEFAULT_CATALOG):
        self.catalog = catalog

    def render(self, query: SegmentQuery, now: datetime | None = None) -> RenderedQuery:
        """Render a rows or count query.

        Args:
            query: Query form of a compiled segment
            now: Reference time for relative values

        Returns:
            SQL and parameters; the tenant id is always ``$1``
        """
        now = now or utcnow()
        segment = query.segment
        params: list[Any] = [segment.tenant_id]

        clauses = [self._render_predicate(p, params, now) for p in segment.predicates]

        if query.mode == "count":
            sql = "SELECT COUNT(DISTINCT s.id) AS total"
        else:
            sql = "SELECT DISTINCT s.id, s.created_at"
        sql += f" FROM {SUBSCRIBER_TABLE} s"

        if self._needs_aggregates(segment):
            sql += f" {self._aggregate_join()}"

        sql += " WHERE s.tenant_id = $1"
        if clauses:
            joiner = f" {LogicalOperator(segment.logical_operator).value} "
            sql += f" AND ({joiner.join(clauses)})"

        if query.mode == "rows":
            sql += " ORDER BY s.created_at DESC"
            if query.limit is not None:
                params.append(query.limit)
                sql += f" LIMIT ${len(params)}"
            if query.offset:
                params.append(query.offset)
                sql += f" OFFSET ${len(params)}"

        return RenderedQuery(sql=sql, params=tuple(params))

    def _needs_aggregates(self, segment: CompiledSegment) -> bool:
        for predicate in segment.predicates:
            field = self.catalog.get(predicate.field)
            if field is not None and field.is_aggregate:
                return True
        return False

    def _aggregate_join(self) -> str:
        columns = []
        relation = None
        for field in self.catalog.fields:
            if not isinstance(field.source, AggregateSource):
                continue
            source = field.source
            relation = source.relation
            if source.function == "count":
                columns.append(f"COUNT(CASE WHEN event = '{source.event}' THEN 1 END) AS {field.id}")
            else:
                columns.append(
                    f"{source.function.upper()}(CASE WHEN event = '{source.event}' "
                    f"THEN {source.column} END) AS {field.id}"
                )
        return (
            f"LEFT JOIN (SELECT subscriber_id, {', '.join(columns)} "
            f"FROM {relation} GROUP BY subscriber_id) analytics "
            "ON s.id = analytics.subscriber_id"
        )

    def _column(self, field: FieldDefinition) -> str:
        if field.is_aggregate:
            return f"analytics.{field.id}"
        return f"s.{field.source.column}"

    def _render_predicate(self, predicate: Predicate, params: list[Any], now: datetime) -> str:
        field = self.catalog.get(predicate.field)
        if field is None:
            raise KeyError(f"Field {predicate.field} is not in catalog {self.catalog.version}")

        column = self._column(field)
        operator = predicate.operator

        if operator is Operator.IS_NULL:
            return f"{column} IS NULL"
        if operator is Operator.IS_NOT_NULL:
            return f"{column} IS NOT NULL"

        value = self._param_value(field, resolve_value(predicate.value, now))

        def placeholder(param: Any) -> str:
            params.append(param)
            return f"${len(params)}"

        if field.type is FieldType.LIST and operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
            clause = f"{column} @> {placeholder(json.dumps([value]))}::jsonb"
            return clause if operator is Operator.CONTAINS else f"NOT ({clause})"

        if field.type is FieldType.MAP and operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
            clause = f"{column} ? {placeholder(str(value))}"
            return clause if operator is Operator.CONTAINS else f"NOT ({clause})"

        if operator is Operator.CONTAINS:
            return f"{column} ILIKE {placeholder('%' + escape_like(str(value)) + '%')} ESCAPE '\\'"
        if operator is Operator.NOT_CONTAINS:
            return f"{column} NOT ILIKE {placeholder('%' + escape_like(str(value)) + '%')} ESCAPE '\\'"
        if operator is Operator.STARTS_WITH:
            return f"{column} ILIKE {placeholder(escape_like(str(value)) + '%')} ESCAPE '\\'"
        if operator is Operator.ENDS_WITH:
            return f"{column} ILIKE {placeholder('%' + escape_like(str(value)))} ESCAPE '\\'"

        if field.type is FieldType.STRING:
            if operator is Operator.EQUALS:
                return f"LOWER({column}) = LOWER({placeholder(value)})"
            return f"LOWER({column}) <> LOWER({placeholder(value)})"

        sql_operator = {
            Operator.EQUALS: "=",
            Operator.NOT_EQUALS: "<>",
            Operator.GREATER_THAN: ">",
            Operator.LESS_THAN: "<",
        }[operator]
        return f"{column} {sql_operator} {placeholder(value)}"

    @staticmethod
    def _param_value(field: FieldDefinition, value: Any) -> Any:
        if field.type is FieldType.NUMBER and isinstance(value, str):
            return float(value)
        if field.type is FieldType.DATE and not isinstance(value, datetime):
            return parse_datetime(value)
        if field.type is FieldType.BOOLEAN and isinstance(value, str):
            return value.lower() == "true"
        return value


def _normalize_value(field: FieldDefinition, value: Any) -> Any:
    if field.type is FieldType.BOOLEAN and isinstance(value, str):
        return value.lower() == "true"
    return value


def matches_predicate(
    predicate: Predicate,
    record: Any,
    now: datetime,
    catalog: FieldCatalog = DEFAULT_CATALOG,
) -> bool:
    """Evaluate one predicate against an in-memory record."""
    field = catalog.get(predicate.field)
    if field is None:
        return False
    actual = lookup_field(record, field.record_path)
    return evaluate_condition(actual, predicate.operator, _normalize_value(field, predicate.value), now)


def matches(
    segment: CompiledSegment,
    record: Any,
    now: datetime | None = None,
    catalog: FieldCatalog = DEFAULT_CATALOG,
) -> bool:
    """Evaluate a compiled segment against an in-memory subscriber record.

    The tenant scope is checked first; a record of another tenant never
    matches regardless of the predicates.
    """
    if lookup_field(record, "tenant_id") != segment.tenant_id:
        return False
    if segment.matches_all:
        return True

    now = now or utcnow()
    results = (matches_predicate(p, record, now, catalog) for p in segment.predicates)
    if segment.logical_operator is LogicalOperator.OR:
        return any(results)
    return all(results)

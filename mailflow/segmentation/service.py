"""Segment management: CRUD, previews, audience pages and size recalculation."""

import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from mailflow.core.errors import NotFoundError, ValidationError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import Clock, utcnow
from mailflow.models.segment import Condition, LogicalOperator, SegmentDefinition
from mailflow.models.subscriber import Subscriber
from mailflow.segmentation.catalog import FieldDefinition, FieldType
from mailflow.segmentation.compiler import CompiledSegment, SegmentCompiler
from mailflow.segmentation.renderers import matches
from mailflow.segmentation.templates import SEGMENT_TEMPLATES, SegmentTemplate
from mailflow.storage.segment_store import SegmentStore
from mailflow.storage.subscriber_store import SubscriberStore

logger = get_logger(__name__)


@dataclass
class SubscriberPage:
    """One page of a segment audience."""

    subscribers: list[Subscriber]
    total: int
    has_more: bool


def generate_segment_id() -> str:
    return f"seg_{uuid.uuid4().hex[:12]}"


class SegmentService:
    """Segment operations on top of the compiler and the subscriber store."""

    def __init__(
        self,
        segments: SegmentStore,
        subscribers: SubscriberStore,
        compiler: SegmentCompiler | None = None,
        clock: Clock = utcnow,
    ):
        self._segments = segments
        self._subscribers = subscribers
        self._compiler = compiler or SegmentCompiler()
        self._clock = clock

    @property
    def compiler(self) -> SegmentCompiler:
        return self._compiler

    def validate_conditions(self, conditions: Iterable[Condition | Mapping[str, Any]]) -> list[Condition]:
        """Strict validation used when saving or previewing segments.

        Raises:
            ValidationError: On the first invalid condition
        """
        parsed = [c if isinstance(c, Condition) else Condition.model_validate(c) for c in conditions]
        for condition in parsed:
            result = self._compiler.validate(condition)
            if not result.is_valid:
                raise ValidationError(f"Invalid condition for field {condition.field}: {result.error}")
        return parsed

    def compile(self, segment: SegmentDefinition) -> CompiledSegment:
        return self._compiler.compile(segment.tenant_id, segment.conditions, segment.logical_operator)

    async def create(
        self,
        tenant_id: str,
        name: str,
        conditions: Iterable[Condition | Mapping[str, Any]],
        logical_operator: LogicalOperator = LogicalOperator.AND,
        description: str = "",
    ) -> SegmentDefinition:
        """Create a segment and compute its initial size.

        Raises:
            ValidationError: If any condition is invalid
        """
        now = self._clock()
        segment = SegmentDefinition(
            segment_id=generate_segment_id(),
            tenant_id=tenant_id,
            name=name,
            description=description,
            conditions=self.validate_conditions(conditions),
            logical_operator=logical_operator,
            created_at=now,
            updated_at=now,
        )
        await self._segments.save(segment)
        logger.info("Segment created", segment_id=segment.segment_id, tenant_id=tenant_id)

        await self.recalculate(segment.segment_id)
        return await self._segments.get(segment.segment_id) or segment

    async def update(self, segment_id: str, **changes: Any) -> SegmentDefinition:
        """Update name, description, conditions, logical operator or active flag.

        Changing conditions or the logical operator triggers a size recalculation.

        Raises:
            NotFoundError: If the segment does not exist
            ValidationError: If any new condition is invalid
        """
        segment = await self.get(segment_id)

        recalculate = False
        if changes.get("conditions") is not None:
            segment.conditions = self.validate_conditions(changes["conditions"])
            recalculate = True
        if changes.get("logical_operator") is not None:
            segment.logical_operator = LogicalOperator(changes["logical_operator"])
            recalculate = True
        for attr in ("name", "description", "active"):
            if changes.get(attr) is not None:
                setattr(segment, attr, changes[attr])

        segment.updated_at = self._clock()
        await self._segments.save(segment)

        if recalculate:
            await self.recalculate(segment_id)
            return await self.get(segment_id)
        return segment

    async def delete(self, segment_id: str) -> None:
        """Delete a segment.

        Raises:
            NotFoundError: If the segment does not exist
        """
        if not await self._segments.delete(segment_id):
            raise NotFoundError(f"Segment {segment_id} not found")

    async def get(self, segment_id: str, tenant_id: str | None = None) -> SegmentDefinition:
        """Get a segment.

        Raises:
            NotFoundError: If the segment does not exist (or belongs to another tenant)
        """
        segment = await self._segments.get(segment_id, tenant_id=tenant_id)
        if segment is None:
            raise NotFoundError(f"Segment {segment_id} not found")
        return segment

    async def list_segments(self, tenant_id: str) -> list[SegmentDefinition]:
        return await self._segments.list_by_tenant(tenant_id)

    async def subscribers(self, segment_id: str, page: int = 1, page_size: int = 50) -> SubscriberPage:
        """Get one page of a segment's audience, newest subscribers first."""
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")

        compiled = self.compile(await self.get(segment_id))
        now = self._clock()
        offset = (page - 1) * page_size

        total = await self._subscribers.fetch_count(compiled.count(), now)
        rows = await self._subscribers.fetch_rows(compiled.rows(limit=page_size, offset=offset), now)
        return SubscriberPage(subscribers=rows, total=total, has_more=offset + len(rows) < total)

    async def test_segment(
        self,
        tenant_id: str,
        conditions: Iterable[Condition | Mapping[str, Any]],
        logical_operator: LogicalOperator = LogicalOperator.AND,
        limit: int = 10,
    ) -> SubscriberPage:
        """Preview an unsaved condition set: total size plus a sample.

        Raises:
            ValidationError: If any condition is invalid
        """
        parsed = self.validate_conditions(conditions)
        compiled = self._compiler.compile(tenant_id, parsed, logical_operator)
        now = self._clock()

        total = await self._subscribers.fetch_count(compiled.count(), now)
        sample = await self._subscribers.fetch_rows(compiled.rows(limit=limit), now)
        return SubscriberPage(subscribers=sample, total=total, has_more=len(sample) < total)

    async def recalculate(self, segment_id: str) -> int:
        """Recompute and store a segment's audience size.

        Returns:
            New subscriber count
        """
        segment = await self.get(segment_id)
        now = self._clock()
        count = await self._subscribers.fetch_count(self.compile(segment).count(), now)
        await self._segments.update_count(segment_id, count, now)
        logger.info("Segment size recalculated", segment_id=segment_id, subscriber_count=count)
        return count

    async def recalculate_all(self, tenant_id: str) -> dict[str, int]:
        """Recompute the size of every active segment of a tenant."""
        counts = {}
        for segment in await self._segments.list_by_tenant(tenant_id, active_only=True):
            counts[segment.segment_id] = await self.recalculate(segment.segment_id)
        return counts

    async def segments_for_subscriber(self, tenant_id: str, subscriber_id: str) -> list[SegmentDefinition]:
        """Active segments of a tenant that currently contain a subscriber.

        Raises:
            NotFoundError: If the subscriber does not exist
        """
        subscriber = await self._subscribers.get(tenant_id, subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found")

        now = self._clock()
        return [
            segment
            for segment in await self._segments.list_by_tenant(tenant_id, active_only=True)
            if matches(self.compile(segment), subscriber, now, self._compiler.catalog)
        ]

    def available_fields(self) -> tuple[FieldDefinition, ...]:
        return self._compiler.catalog.fields

    def supported_operators(self, field_type: FieldType | str) -> list[str]:
        return [op.value for op in self._compiler.catalog.supported_operators(FieldType(field_type))]

    def templates(self) -> dict[str, SegmentTemplate]:
        return dict(SEGMENT_TEMPLATES)

    async def create_from_template(
        self,
        tenant_id: str,
        template_name: str,
        custom_name: str | None = None,
    ) -> SegmentDefinition:
        """Create a segment from a built-in template.

        Raises:
            NotFoundError: If the template does not exist
        """
        template = SEGMENT_TEMPLATES.get(template_name)
        if template is None:
            raise NotFoundError(f"Segment template {template_name} not found")

        name = custom_name or template.display_name
        return await self.create(
            tenant_id=tenant_id,
            name=name,
            conditions=template.conditions,
            logical_operator=template.logical_operator,
            description=f"Auto-generated segment based on {name} template",
        )

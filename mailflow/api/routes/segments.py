"""Segment management API routes."""

from fastapi import APIRouter, Query

from mailflow.api.deps import PaginationDep, SegmentServiceDep
from mailflow.models.segment import SegmentDefinition
from mailflow.schemas.common import APIResponse, PaginatedResponse
from mailflow.schemas.segment import (
    AudiencePage,
    FieldResponse,
    RecalculateResponse,
    SegmentCreate,
    SegmentFromTemplate,
    SegmentPreview,
    SegmentResponse,
    SegmentUpdate,
    SubscriberSummary,
    TemplateResponse,
)
from mailflow.segmentation.service import SubscriberPage

router = APIRouter(prefix="/segments", tags=["segments"])


def _to_response(segment: SegmentDefinition) -> SegmentResponse:
    return SegmentResponse.model_validate(segment.model_dump())


def _to_page(page: SubscriberPage) -> AudiencePage:
    return AudiencePage(
        subscribers=[SubscriberSummary.model_validate(s.model_dump()) for s in page.subscribers],
        total=page.total,
        has_more=page.has_more,
    )


@router.get("/fields", response_model=APIResponse[list[FieldResponse]])
async def list_fields(service: SegmentServiceDep) -> APIResponse[list[FieldResponse]]:
    """Field catalog with the operators each field accepts."""
    return APIResponse(
        data=[
            FieldResponse(
                id=field.id,
                name=field.name,
                type=field.type.value,
                description=field.description,
                operators=service.supported_operators(field.type),
                options=list(field.options),
            )
            for field in service.available_fields()
        ]
    )


@router.get("/templates", response_model=APIResponse[list[TemplateResponse]])
async def list_templates(service: SegmentServiceDep) -> APIResponse[list[TemplateResponse]]:
    """Built-in segment templates."""
    return APIResponse(
        data=[
            TemplateResponse(
                name=template.name,
                display_name=template.display_name,
                logical_operator=template.logical_operator,
                conditions=list(template.conditions),
            )
            for template in service.templates().values()
        ]
    )


@router.post("/from-template", response_model=APIResponse[SegmentResponse])
async def create_from_template(
    data: SegmentFromTemplate,
    service: SegmentServiceDep,
) -> APIResponse[SegmentResponse]:
    """Create a segment from a built-in template."""
    segment = await service.create_from_template(data.tenant_id, data.template_name, data.name)
    return APIResponse(data=_to_response(segment))


@router.post("/preview", response_model=APIResponse[AudiencePage])
async def preview_segment(
    data: SegmentPreview,
    service: SegmentServiceDep,
) -> APIResponse[AudiencePage]:
    """Audience size and a sample for an unsaved condition set."""
    page = await service.test_segment(
        data.tenant_id,
        data.conditions,
        data.logical_operator,
        limit=data.limit,
    )
    return APIResponse(data=_to_page(page))


@router.post("", response_model=APIResponse[SegmentResponse])
async def create_segment(
    data: SegmentCreate,
    service: SegmentServiceDep,
) -> APIResponse[SegmentResponse]:
    """Create a segment and compute its size."""
    segment = await service.create(
        data.tenant_id,
        data.name,
        data.conditions,
        data.logical_operator,
        data.description,
    )
    return APIResponse(data=_to_response(segment))


@router.get("", response_model=PaginatedResponse[SegmentResponse])
async def list_segments(
    service: SegmentServiceDep,
    pagination: PaginationDep,
    tenant_id: str = Query(..., min_length=1, description="Tenant scope"),
) -> PaginatedResponse[SegmentResponse]:
    """List a tenant's segments, newest first."""
    segments = await service.list_segments(tenant_id)

    return PaginatedResponse.build(
        [_to_response(s) for s in pagination.slice(segments)],
        total=len(segments),
        pagination=pagination,
    )


@router.post("/recalculate", response_model=APIResponse[list[RecalculateResponse]])
async def recalculate_all(
    service: SegmentServiceDep,
    tenant_id: str = Query(..., min_length=1, description="Tenant scope"),
) -> APIResponse[list[RecalculateResponse]]:
    """Recompute the size of every active segment of a tenant."""
    counts = await service.recalculate_all(tenant_id)
    return APIResponse(
        data=[RecalculateResponse(segment_id=k, subscriber_count=v) for k, v in counts.items()]
    )


@router.get("/{segment_id}", response_model=APIResponse[SegmentResponse])
async def get_segment(
    segment_id: str,
    service: SegmentServiceDep,
) -> APIResponse[SegmentResponse]:
    """Get a segment."""
    return APIResponse(data=_to_response(await service.get(segment_id)))


@router.patch("/{segment_id}", response_model=APIResponse[SegmentResponse])
async def update_segment(
    segment_id: str,
    data: SegmentUpdate,
    service: SegmentServiceDep,
) -> APIResponse[SegmentResponse]:
    """Partially update a segment."""
    segment = await service.update(segment_id, **data.model_dump(exclude_unset=True))
    return APIResponse(data=_to_response(segment))


@router.delete("/{segment_id}", response_model=APIResponse)
async def delete_segment(
    segment_id: str,
    service: SegmentServiceDep,
) -> APIResponse:
    """Delete a segment."""
    await service.delete(segment_id)
    return APIResponse(message=f"Segment {segment_id} deleted")


@router.get("/{segment_id}/subscribers", response_model=APIResponse[AudiencePage])
async def get_segment_subscribers(
    segment_id: str,
    service: SegmentServiceDep,
    pagination: PaginationDep,
) -> APIResponse[AudiencePage]:
    """One page of a segment's audience, newest subscribers first."""
    page = await service.subscribers(segment_id, page=pagination.page, page_size=pagination.page_size)
    return APIResponse(data=_to_page(page))


@router.post("/{segment_id}/recalculate", response_model=APIResponse[RecalculateResponse])
async def recalculate_segment(
    segment_id: str,
    service: SegmentServiceDep,
) -> APIResponse[RecalculateResponse]:
    """Recompute a segment's audience size."""
    count = await service.recalculate(segment_id)
    return APIResponse(data=RecalculateResponse(segment_id=segment_id, subscriber_count=count))

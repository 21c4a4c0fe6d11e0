"""Automation management API routes."""

import uuid

from fastapi import APIRouter, HTTPException, Query

from mailflow.api.deps import AutomationStoreDep, CoordinatorDep, PaginationDep
from mailflow.core.logging import get_logger
from mailflow.models.automation import Automation, AutomationMetadata
from mailflow.schemas.automation import (
    AutomationCreate,
    AutomationCreateResponse,
    AutomationResponse,
    AutomationStatusUpdate,
    AutomationUpdate,
)
from mailflow.schemas.common import APIResponse, PaginatedResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/automations", tags=["automations"])


def _to_response(automation: Automation) -> AutomationResponse:
    return AutomationResponse.model_validate(automation.model_dump())


@router.post("", response_model=APIResponse[AutomationCreateResponse])
async def create_automation(
    data: AutomationCreate,
    store: AutomationStoreDep,
) -> APIResponse[AutomationCreateResponse]:
    """Create a new automation."""
    automation = Automation(
        automation_id=f"auto_{uuid.uuid4().hex[:12]}",
        tenant_id=data.tenant_id,
        name=data.name,
        description=data.description,
        active=data.active,
        trigger=data.trigger,
        actions=data.actions,
        metadata=AutomationMetadata(),
    )

    created = await store.create(automation)
    logger.info("Automation created", automation_id=created.automation_id, tenant_id=created.tenant_id)

    return APIResponse(
        data=AutomationCreateResponse(
            automation_id=created.automation_id,
            version=created.version,
            created_at=created.metadata.created_at,
        )
    )


@router.get("", response_model=PaginatedResponse[AutomationResponse])
async def list_automations(
    store: AutomationStoreDep,
    pagination: PaginationDep,
    tenant_id: str = Query(..., min_length=1, description="Tenant scope"),
    active: bool | None = Query(default=None, description="Filter by active flag"),
) -> PaginatedResponse[AutomationResponse]:
    """List a tenant's automations."""
    automations = await store.list_by_tenant(tenant_id)
    if active is not None:
        automations = [a for a in automations if a.active == active]

    return PaginatedResponse.build(
        [_to_response(a) for a in pagination.slice(automations)],
        total=len(automations),
        pagination=pagination,
    )


@router.get("/{automation_id}", response_model=APIResponse[AutomationResponse])
async def get_automation(
    automation_id: str,
    store: AutomationStoreDep,
) -> APIResponse[AutomationResponse]:
    """Get the current version of an automation."""
    automation = await store.get(automation_id)
    if not automation:
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")

    return APIResponse(data=_to_response(automation))


@router.patch("/{automation_id}", response_model=APIResponse[AutomationResponse])
async def update_automation(
    automation_id: str,
    data: AutomationUpdate,
    store: AutomationStoreDep,
) -> APIResponse[AutomationResponse]:
    """Partially update an automation.

    Every update stores a new definition version; running executions keep
    the version they started on.
    """
    existing = await store.get(automation_id)
    if not existing:
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")

    updated_dict = existing.model_dump()
    updated_dict.update(data.model_dump(exclude_unset=True))

    result = await store.update(automation_id, Automation.model_validate(updated_dict))
    if not result:
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")

    return APIResponse(data=_to_response(result))


@router.delete("/{automation_id}", response_model=APIResponse)
async def delete_automation(
    automation_id: str,
    store: AutomationStoreDep,
    coordinator: CoordinatorDep,
) -> APIResponse:
    """Delete an automation, cancelling its running executions first."""
    if not await store.get(automation_id):
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")

    cancelled = await coordinator.cancel_for_automation(automation_id, reason="automation deleted")
    await store.delete(automation_id)
    logger.info("Automation deleted", automation_id=automation_id, executions_cancelled=cancelled)

    return APIResponse(
        message=f"Automation {automation_id} deleted",
        data={"executions_cancelled": cancelled},
    )


@router.patch("/{automation_id}/status", response_model=APIResponse[AutomationResponse])
async def update_automation_status(
    automation_id: str,
    data: AutomationStatusUpdate,
    store: AutomationStoreDep,
) -> APIResponse[AutomationResponse]:
    """Activate or deactivate an automation."""
    updated = await store.set_active(automation_id, data.active)
    if not updated:
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")

    return APIResponse(data=_to_response(updated))

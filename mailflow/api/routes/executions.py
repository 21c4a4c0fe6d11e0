"""Execution history API routes."""

from fastapi import APIRouter, HTTPException, Query

from mailflow.api.deps import (
    AutomationStoreDep,
    CoordinatorDep,
    ExecutionStoreDep,
    PaginationDep,
)
from mailflow.models.execution import Execution, ExecutionStatus
from mailflow.schemas.automation import (
    AutomationStatsResponse,
    ExecutionCancel,
    ExecutionSummary,
)
from mailflow.schemas.common import APIResponse, PaginatedResponse

router = APIRouter(tags=["executions"])


@router.get(
    "/automations/{automation_id}/executions",
    response_model=PaginatedResponse[ExecutionSummary],
)
async def list_executions(
    automation_id: str,
    automations: AutomationStoreDep,
    executions: ExecutionStoreDep,
    pagination: PaginationDep,
    status: ExecutionStatus | None = Query(default=None, description="Filter by status"),
) -> PaginatedResponse[ExecutionSummary]:
    """Get execution history of an automation, newest first.

    With a status filter the whole history is scanned and ``total`` counts
    the filtered executions.
    """
    if not await automations.get(automation_id):
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")

    if status is None:
        total = await executions.count_by_automation(automation_id)
        records = await executions.list_by_automation(
            automation_id,
            limit=pagination.page_size,
            offset=pagination.offset,
        )
    else:
        everything = await executions.list_by_automation(
            automation_id,
            limit=await executions.count_by_automation(automation_id),
        )
        filtered = [e for e in everything if e.status == status]
        total = len(filtered)
        records = pagination.slice(filtered)

    return PaginatedResponse.build(
        [ExecutionSummary.model_validate(e.model_dump()) for e in records],
        total=total,
        pagination=pagination,
    )


@router.get(
    "/automations/{automation_id}/stats",
    response_model=APIResponse[AutomationStatsResponse],
)
async def get_automation_stats(
    automation_id: str,
    automations: AutomationStoreDep,
    coordinator: CoordinatorDep,
) -> APIResponse[AutomationStatsResponse]:
    """Execution counts by status for an automation."""
    if not await automations.get(automation_id):
        raise HTTPException(status_code=404, detail=f"Automation {automation_id} not found")

    stats = await coordinator.get_stats(automation_id)
    return APIResponse(
        data=AutomationStatsResponse(
            **stats.model_dump(),
            completion_rate=round(stats.completion_rate, 2),
        )
    )


@router.get("/executions/{execution_id}", response_model=APIResponse[Execution])
async def get_execution(
    execution_id: str,
    executions: ExecutionStoreDep,
) -> APIResponse[Execution]:
    """Get one execution together with its step log."""
    execution = await executions.get(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")

    return APIResponse(data=execution)


@router.post("/executions/{execution_id}/cancel", response_model=APIResponse)
async def cancel_execution(
    execution_id: str,
    coordinator: CoordinatorDep,
    data: ExecutionCancel | None = None,
) -> APIResponse:
    """Cancel a running execution.

    Cancelling an execution that already ended is a no-op reported in the
    message.
    """
    reason = data.reason if data else "cancelled"
    cancelled = await coordinator.cancel(execution_id, reason)

    return APIResponse(
        message=f"Execution {execution_id} cancelled" if cancelled else f"Execution {execution_id} already ended",
        data={"cancelled": cancelled},
    )

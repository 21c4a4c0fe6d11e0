"""API dependency injection."""

from typing import Annotated

from fastapi import Depends, Query

from mailflow.engine.coordinator import ExecutionCoordinator
from mailflow.schemas.common import PaginationParams
from mailflow.segmentation.service import SegmentService
from mailflow.services import build_coordinator, build_segment_service
from mailflow.storage.automation_store import AutomationStore
from mailflow.storage.execution_store import ExecutionStore
from mailflow.storage.redis_client import get_redis


def get_automation_store() -> AutomationStore:
    """Get automation store instance."""
    return AutomationStore(get_redis())


def get_execution_store() -> ExecutionStore:
    """Get execution store instance."""
    return ExecutionStore(get_redis())


def get_coordinator() -> ExecutionCoordinator:
    """Get a coordinator for cancellation and stats; the API never sends."""
    return build_coordinator(get_redis(), delivery=None)


def get_segment_service() -> SegmentService:
    """Get segment service instance."""
    return build_segment_service(get_redis())


# Type aliases for dependency injection
AutomationStoreDep = Annotated[AutomationStore, Depends(get_automation_store)]
ExecutionStoreDep = Annotated[ExecutionStore, Depends(get_execution_store)]
CoordinatorDep = Annotated[ExecutionCoordinator, Depends(get_coordinator)]
SegmentServiceDep = Annotated[SegmentService, Depends(get_segment_service)]


def get_pagination(
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=20, ge=1, le=100, description="Items per page"),
) -> PaginationParams:
    """Get pagination parameters from query."""
    return PaginationParams(page=page, page_size=page_size)


PaginationDep = Annotated[PaginationParams, Depends(get_pagination)]

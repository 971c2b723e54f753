"""
Generation task API endpoints.
"""

from typing import Any

from fastapi import APIRouter, Query

from genqueue.config.logging import get_logger
from genqueue.runtime import Runtime, RuntimeDep
from genqueue.v1.core.exceptions import create_success_response
from genqueue.v1.tasks.schemas import BulkActionRequest, TaskCreateRequest, TaskStatus

logger = get_logger(__name__)
router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("", response_model=dict)
async def create_task(
    task_request: TaskCreateRequest, runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    """Create a generation task and optionally queue its batches."""
    task = await runtime.tasks.create_task(
        task_request.workflow_type,
        task_request.item_ids,
        priority=task_request.priority,
        source=task_request.source,
        start=task_request.start,
    )
    return create_success_response(data=task.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_tasks(
    status: list[TaskStatus] | None = Query(default=None, description="Filter by status"),
    workflow_type: str | None = Query(default=None, description="Filter by workflow"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    tasks, total = await runtime.tasks.list_tasks(status, workflow_type, limit, offset)
    return create_success_response(
        data={
            "tasks": [task.to_status_dict() for task in tasks],
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    )


@router.get("/{task_id}", response_model=dict)
async def get_task(task_id: str, runtime: Runtime = RuntimeDep) -> dict[str, Any]:
    """Task status with per-batch stats."""
    return create_success_response(data=await runtime.tasks.get_task_status(task_id))


@router.post("/bulk", response_model=dict)
async def bulk_action(
    action_request: BulkActionRequest, runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    """Apply one action to many tasks; ineligible tasks are skipped."""
    result = await runtime.tasks.bulk_action(
        action_request.action, action_request.task_ids, priority=action_request.priority
    )

    logger.info(
        "Bulk task action via API",
        action=action_request.action,
        applied=len(result.applied),
        skipped=len(result.skipped),
    )
    return create_success_response(data=result.model_dump())

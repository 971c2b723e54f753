"""
Job queue API endpoints.

Provides endpoints for job enqueueing, monitoring, cancellation and manual ticks.
"""

from typing import Any

from fastapi import APIRouter, Query

from genqueue.config.logging import get_logger
from genqueue.runtime import Runtime, RuntimeDep
from genqueue.v1.core.exceptions import NotFoundError, create_success_response
from genqueue.v1.jobs.models import JobStatus
from genqueue.v1.jobs.schemas import (
    JobEnqueueRequest,
    JobEnqueueResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=dict)
async def enqueue_job(
    job_request: JobEnqueueRequest, runtime: Runtime = RuntimeDep
) -> dict[str, Any]:
    """Enqueue a new background job."""
    job_id = await runtime.scheduler.queue_job(
        job_request.type,
        job_request.payload,
        priority=job_request.priority,
        delay=job_request.delay,
        max_attempts=job_request.max_attempts,
    )
    job = await runtime.jobs.get_job(job_id)

    logger.info("Job enqueued via API", job_id=job_id, job_type=job_request.type)

    response = JobEnqueueResponse(job_id=job_id, status=job.status)
    return create_success_response(data=response.model_dump())


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(default=None, description="Filter by status"),
    type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""
    jobs, total = await runtime.jobs.list_jobs(
        status=[s.value for s in status] if status else None,
        job_type=type,
        limit=limit,
        offset=offset,
    )
    response = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response.model_dump(mode="json"))


@router.get("/stats", response_model=dict)
async def get_job_stats(
    window_hours: int | None = Query(default=None, ge=1, description="Trailing window"),
    runtime: Runtime = RuntimeDep,
) -> dict[str, Any]:
    """Job counts per status and type over a trailing window."""
    stats = await runtime.jobs.get_statistics(window_hours)
    return create_success_response(data=JobStatsResponse(**stats).model_dump())


@router.post("/tick", response_model=dict)
async def run_tick(runtime: Runtime = RuntimeDep) -> dict[str, Any]:
    """Run one scheduler tick now."""
    result = await runtime.scheduler.process_jobs()
    message = "Tick skipped, another tick holds the lock" if result.skipped else None
    return create_success_response(data=result.model_dump(mode="json"), message=message)


@router.get("/{job_id}", response_model=dict)
async def get_job(job_id: str, runtime: Runtime = RuntimeDep) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await runtime.jobs.get_job(job_id)
    if job is None:
        raise NotFoundError("Job not found", details={"job_id": job_id})
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(job_id: str, runtime: Runtime = RuntimeDep) -> dict[str, Any]:
    """Cancel a queued, retrying or processing job."""
    if await runtime.jobs.get_job(job_id) is None:
        raise NotFoundError("Job not found", details={"job_id": job_id})

    cancelled = await runtime.scheduler.cancel_job(job_id)
    if cancelled:
        logger.info("Job cancelled via API", job_id=job_id)

    return create_success_response(
        data={"cancelled": cancelled, "job_id": job_id},
        message=None if cancelled else "Job already finished",
    )

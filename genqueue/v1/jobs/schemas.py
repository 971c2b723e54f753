"""
Job queue Pydantic schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from genqueue.v1.jobs.models import JobStatus


class JobEnqueueRequest(BaseModel):
    """Schema for enqueueing jobs via API."""

    type: str = Field(..., min_length=1, max_length=100, description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    priority: int | None = Field(
        default=None, ge=0, description="Job priority, lower runs first"
    )
    delay: float = Field(default=0, ge=0, description="Seconds before the job is ready")
    max_attempts: int | None = Field(default=None, ge=1, description="Attempt limit")


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: str
    status: str


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    scheduled_at: datetime

    # Results
    progress: int
    message: str | None = None
    result: dict[str, Any] | None = None
    last_error: str | None = None

    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics over a trailing window."""

    window_hours: int
    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # queued + retrying, any age
    processing: int


class JobOutcome(BaseModel):
    """What one ``process_job`` call did to a job."""

    job_id: str
    job_type: str
    status: JobStatus | None = Field(
        default=None, description="Status written, None when the row was no longer active"
    )
    attempts: int
    error: str | None = None
    next_run_at: datetime | None = None
    elapsed_s: float | None = None


class TickResult(BaseModel):
    """Result of one scheduler tick."""

    skipped: bool = False
    processed: int = 0
    lock_lost: bool = False
    outcomes: list[JobOutcome] = Field(default_factory=list)

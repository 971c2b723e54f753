"""
Generation task and batch models.

Tasks and batches are plain Pydantic models; ``genqueue.v1.tasks.transitions`` maps a task
and an event to the next task and the repository persists the result.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    RETRYING = "retrying"
    FAILED_PERMANENT = "failed_permanent"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    TIMED_OUT = "timed_out"


# No automatic transition leaves these
TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.COMPLETED_WITH_ERRORS,
        TaskStatus.CANCELLED,
        TaskStatus.FAILED_PERMANENT,
        TaskStatus.TIMED_OUT,
    }
)

# Statuses in which batch work may still be running or pending
ACTIVE_STATUSES = frozenset(
    {TaskStatus.PENDING, TaskStatus.PROCESSING, TaskStatus.RETRYING}
)

# Statuses whose records may be deleted
DELETABLE_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.COMPLETED_WITH_ERRORS,
        TaskStatus.FAILED,
        TaskStatus.FAILED_PERMANENT,
        TaskStatus.CANCELLED,
        TaskStatus.TIMED_OUT,
    }
)


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


SETTLED_BATCH_STATUSES = frozenset(
    {
        BatchStatus.COMPLETED,
        BatchStatus.COMPLETED_WITH_ERRORS,
        BatchStatus.FAILED,
        BatchStatus.CANCELLED,
    }
)


class ItemStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchItem(BaseModel):
    item_id: str
    status: ItemStatus = ItemStatus.PENDING
    error: str | None = None
    result: dict[str, Any] | None = None


class BatchStats(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0


class Batch(BaseModel):
    """A fixed-size partition of a task's items."""

    batch_id: str
    task_id: str
    batch_index: int
    workflow_type: str
    status: BatchStatus = BatchStatus.PENDING
    items: list[BatchItem] = Field(default_factory=list)
    retry_attempt: int = 0
    version: int = 0
    error: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def stats(self) -> BatchStats:
        return BatchStats(
            total=len(self.items),
            completed=sum(1 for item in self.items if item.status == ItemStatus.COMPLETED),
            failed=sum(1 for item in self.items if item.status == ItemStatus.FAILED),
        )

    def is_settled(self) -> bool:
        return self.status in SETTLED_BATCH_STATUSES

    def pending_items(self) -> list[BatchItem]:
        return [item for item in self.items if item.status == ItemStatus.PENDING]


class BatchRef(BaseModel):
    """A task's view of one of its batches."""

    batch_id: str
    batch_index: int
    item_count: int
    status: BatchStatus = BatchStatus.PENDING
    completed_count: int = 0
    failed_count: int = 0
    job_id: str | None = None

    def is_settled(self) -> bool:
        return self.status in SETTLED_BATCH_STATUSES


class GenerationTask(BaseModel):
    """A unit of generation work spanning one or more batches."""

    id: str
    workflow_type: str
    source: str = "manual"
    priority: int = 10
    status: TaskStatus = TaskStatus.PENDING

    total_items: int = 0
    processed_count: int = 0
    failed_count: int = 0
    progress: float = 0.0
    batch_jobs: list[BatchRef] = Field(default_factory=list)

    retry_count: int = 0
    max_retries: int = 3
    timeout_threshold: int = 3600
    version: int = 0

    created_at: datetime
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    timed_out_at: datetime | None = None
    last_retry_at: datetime | None = None

    paused_from_status: TaskStatus | None = None

    error: str | None = None
    permanent_failure_reason: str | None = None
    timeout_reason: str | None = None

    bulk_action: str | None = None
    bulk_action_at: datetime | None = None
    priority_changed_from: int | None = None
    priority_changed_at: datetime | None = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_settled(self) -> bool:
        """Terminal, or failed and waiting for a retry."""
        return self.is_terminal() or self.status == TaskStatus.FAILED

    def can_retry(self) -> bool:
        return self.status == TaskStatus.FAILED and self.retry_count < self.max_retries

    def get_batch_ref(self, batch_id: str) -> BatchRef | None:
        for ref in self.batch_jobs:
            if ref.batch_id == batch_id:
                return ref
        return None

    def to_status_dict(self) -> dict[str, Any]:
        """Summary for status displays."""
        return {
            "id": self.id,
            "workflow_type": self.workflow_type,
            "status": self.status.value,
            "priority": self.priority,
            "progress": self.progress,
            "total_items": self.total_items,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "batches": len(self.batch_jobs),
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


BulkActionName = Literal["run", "cancel", "retry", "delete", "pause", "resume", "priority"]


class TaskCreateRequest(BaseModel):
    """Schema for creating a generation task via API."""

    workflow_type: str = Field(..., min_length=1, max_length=50)
    item_ids: list[str] = Field(..., min_length=1, description="Items to generate")
    priority: int = Field(default=10, ge=1, le=100, description="Lower runs first")
    source: str = Field(default="manual", description="'manual' or 'auto'")
    start: bool = Field(default=True, description="Queue batch jobs immediately")

    @field_validator("item_ids")
    @classmethod
    def strip_ids(cls, v: list[str]) -> list[str]:
        return [item_id.strip() for item_id in v]


class BulkActionRequest(BaseModel):
    """Schema for applying one action to many tasks."""

    action: BulkActionName
    task_ids: list[str] = Field(..., min_length=1)
    priority: int | None = Field(default=None, ge=1, le=100)


class BulkActionResult(BaseModel):
    """Per-task outcome of a bulk action."""

    action: str
    applied: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(
        default_factory=dict, description="task id -> reason it was not eligible"
    )
    errors: dict[str, str] = Field(default_factory=dict)

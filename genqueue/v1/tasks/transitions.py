"""
Pure state transitions for generation tasks.

``transition(task, event)`` never touches storage: it returns a new task, or the same
object when the event changes nothing, and raises ``InvalidTransitionError`` when the event
is not allowed from the task's current status. Progress and item counts are always derived
from the task's batch refs.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import ClassVar

from pydantic import BaseModel, ConfigDict

from genqueue.v1.core.exceptions import InvalidTransitionError
from genqueue.v1.tasks.schemas import (
    ACTIVE_STATUSES,
    Batch,
    BatchRef,
    BatchStatus,
    GenerationTask,
    TaskStatus,
)


class TaskEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: ClassVar[str] = "event"
    at: datetime


class TaskStarted(TaskEvent):
    name: ClassVar[str] = "start"


class BatchProgressed(TaskEvent):
    name: ClassVar[str] = "batch_progress"
    ref: BatchRef


class TaskFailed(TaskEvent):
    name: ClassVar[str] = "fail"
    reason: str


class RetryRequested(TaskEvent):
    name: ClassVar[str] = "retry"


class RunRequested(TaskEvent):
    name: ClassVar[str] = "run"


class PauseRequested(TaskEvent):
    name: ClassVar[str] = "pause"


class ResumeRequested(TaskEvent):
    name: ClassVar[str] = "resume"


class CancelRequested(TaskEvent):
    name: ClassVar[str] = "cancel"
    reason: str | None = None


class TimeoutChecked(TaskEvent):
    name: ClassVar[str] = "timeout_check"


class PriorityChanged(TaskEvent):
    name: ClassVar[str] = "priority"
    priority: int


def transition(task: GenerationTask, event: TaskEvent) -> GenerationTask:
    """Apply ``event`` to ``task`` and return the resulting task."""
    try:
        apply = _TRANSITIONS[type(event)]
    except KeyError:
        raise TypeError(f"Unknown task event: {type(event).__name__}") from None
    return apply(task, event)


def recompute_progress(task: GenerationTask) -> None:
    """Derive item counts and progress from the batch refs, in place."""
    task.processed_count = sum(ref.completed_count for ref in task.batch_jobs)
    task.failed_count = sum(ref.failed_count for ref in task.batch_jobs)
    if task.total_items > 0:
        task.progress = round(task.processed_count / task.total_items * 100, 2)
    else:
        task.progress = 0.0


def timeout_reference(task: GenerationTask) -> datetime | None:
    """Instant the processing clock counts from; a resume restarts it."""
    if task.resumed_at and (task.started_at is None or task.resumed_at > task.started_at):
        return task.resumed_at
    return task.started_at


def is_timed_out(task: GenerationTask, now: datetime) -> bool:
    reference = timeout_reference(task)
    if task.status != TaskStatus.PROCESSING or reference is None:
        return False
    return now - reference > timedelta(seconds=task.timeout_threshold)


def settle_batch(batch: Batch, at: datetime) -> Batch:
    """
    Close a batch whose items are no longer pending.

    All items completed gives ``completed``, a mix gives ``completed_with_errors``, no
    completed item gives ``failed``. Batches with pending items or already settled are
    returned unchanged.
    """
    if batch.is_settled() or batch.pending_items():
        return batch

    stats = batch.stats
    updated = batch.model_copy(deep=True)
    if stats.completed == stats.total:
        updated.status = BatchStatus.COMPLETED
    elif stats.completed > 0:
        updated.status = BatchStatus.COMPLETED_WITH_ERRORS
    else:
        updated.status = BatchStatus.FAILED
        updated.error = f"All {stats.total} items failed"
    updated.completed_at = at
    return updated


def batch_ref_for(batch: Batch, current: BatchRef | None) -> BatchRef:
    """The task-side ref mirroring ``batch``; settled batches drop their job trigger."""
    stats = batch.stats
    return BatchRef(
        batch_id=batch.batch_id,
        batch_index=batch.batch_index,
        item_count=stats.total,
        status=batch.status,
        completed_count=stats.completed,
        failed_count=stats.failed,
        job_id=None if batch.is_settled() or current is None else current.job_id,
    )


def _invalid(task: GenerationTask, event: TaskEvent, **details) -> InvalidTransitionError:
    return InvalidTransitionError(task.status.value, event.name, details or None)


def _started(task: GenerationTask, event: TaskStarted) -> GenerationTask:
    if task.status == TaskStatus.PROCESSING:
        return task
    if task.status not in (TaskStatus.PENDING, TaskStatus.RETRYING):
        raise _invalid(task, event)

    updated = task.model_copy(deep=True)
    updated.status = TaskStatus.PROCESSING
    updated.started_at = event.at
    updated.updated_at = event.at
    return updated


def _batch_progressed(task: GenerationTask, event: BatchProgressed) -> GenerationTask:
    # Late results for tasks that already left the active states change nothing
    if task.status not in ACTIVE_STATUSES and task.status != TaskStatus.PAUSED:
        return task

    current = task.get_batch_ref(event.ref.batch_id)
    if current is None:
        raise _invalid(task, event, batch_id=event.ref.batch_id, reason="unknown batch")
    if current == event.ref:
        return task

    updated = task.model_copy(deep=True)
    updated.batch_jobs = [
        event.ref.model_copy() if ref.batch_id == event.ref.batch_id else ref
        for ref in updated.batch_jobs
    ]
    updated.updated_at = event.at
    recompute_progress(updated)

    if updated.status != TaskStatus.PAUSED:
        _settle(updated, event.at)
    return updated


def _settle(task: GenerationTask, at: datetime) -> None:
    """Decide the task outcome once every batch ref has settled."""
    if not task.batch_jobs or not all(ref.is_settled() for ref in task.batch_jobs):
        return

    if task.processed_count >= task.total_items:
        task.status = TaskStatus.COMPLETED
        task.completed_at = at
        task.error = None
    elif task.processed_count > 0:
        task.status = TaskStatus.COMPLETED_WITH_ERRORS
        task.completed_at = at
        task.error = f"{task.failed_count} of {task.total_items} items failed"
    else:
        _fail(task, f"All {task.total_items} items failed", at)


def _fail(task: GenerationTask, reason: str, at: datetime) -> None:
    task.error = reason
    task.failed_at = at
    task.updated_at = at
    if task.retry_count >= task.max_retries:
        task.status = TaskStatus.FAILED_PERMANENT
        task.permanent_failure_reason = (
            f"{reason} (retries exhausted: {task.retry_count}/{task.max_retries})"
        )
    else:
        task.status = TaskStatus.FAILED


def _failed(task: GenerationTask, event: TaskFailed) -> GenerationTask:
    if task.is_terminal() or task.status == TaskStatus.FAILED:
        return task
    if task.status not in ACTIVE_STATUSES and task.status != TaskStatus.PAUSED:
        raise _invalid(task, event)

    updated = task.model_copy(deep=True)
    updated.paused_at = None
    updated.paused_from_status = None
    _fail(updated, event.reason, event.at)
    return updated


def _reset_unfinished_batches(task: GenerationTask) -> None:
    for ref in task.batch_jobs:
        if ref.status != BatchStatus.COMPLETED:
            ref.status = BatchStatus.PENDING
            ref.failed_count = 0
            ref.job_id = None
    recompute_progress(task)


def _retry(task: GenerationTask, event: TaskEvent) -> GenerationTask:
    if task.status != TaskStatus.FAILED:
        raise _invalid(task, event)
    if not task.can_retry():
        raise _invalid(
            task,
            event,
            reason="retries exhausted",
            retry_count=task.retry_count,
            max_retries=task.max_retries,
        )

    updated = task.model_copy(deep=True)
    updated.retry_count += 1
    updated.status = TaskStatus.RETRYING
    updated.last_retry_at = event.at
    updated.updated_at = event.at
    updated.failed_at = None
    updated.error = None
    updated.completed_at = None
    _reset_unfinished_batches(updated)
    return updated


def _run(task: GenerationTask, event: RunRequested) -> GenerationTask:
    if task.status == TaskStatus.PENDING:
        return task
    if task.status == TaskStatus.FAILED:
        return _retry(task, event)
    if task.status != TaskStatus.CANCELLED:
        raise _invalid(task, event)

    updated = task.model_copy(deep=True)
    updated.status = TaskStatus.PENDING
    updated.cancelled_at = None
    updated.error = None
    updated.updated_at = event.at
    _reset_unfinished_batches(updated)
    return updated


def _pause(task: GenerationTask, event: PauseRequested) -> GenerationTask:
    if task.status == TaskStatus.PAUSED:
        return task
    if task.status != TaskStatus.PROCESSING:
        raise _invalid(task, event)

    updated = task.model_copy(deep=True)
    updated.paused_from_status = task.status
    updated.status = TaskStatus.PAUSED
    updated.paused_at = event.at
    updated.updated_at = event.at
    for ref in updated.batch_jobs:
        if not ref.is_settled():
            ref.job_id = None
    return updated


def _resume(task: GenerationTask, event: ResumeRequested) -> GenerationTask:
    if task.status != TaskStatus.PAUSED:
        raise _invalid(task, event)

    updated = task.model_copy(deep=True)
    updated.status = task.paused_from_status or TaskStatus.PROCESSING
    updated.paused_at = None
    updated.paused_from_status = None
    updated.resumed_at = event.at
    updated.updated_at = event.at
    # Batches may have finished while the task was paused
    _settle(updated, event.at)
    return updated


def _cancel(task: GenerationTask, event: CancelRequested) -> GenerationTask:
    if task.is_terminal():
        return task
    if task.status not in (TaskStatus.PENDING, TaskStatus.PROCESSING):
        raise _invalid(task, event)

    updated = task.model_copy(deep=True)
    updated.status = TaskStatus.CANCELLED
    updated.cancelled_at = event.at
    updated.updated_at = event.at
    if event.reason:
        updated.error = event.reason
    for ref in updated.batch_jobs:
        if not ref.is_settled():
            ref.status = BatchStatus.CANCELLED
        ref.job_id = None
    return updated


def _timeout_checked(task: GenerationTask, event: TimeoutChecked) -> GenerationTask:
    if not is_timed_out(task, event.at):
        return task

    elapsed = event.at - timeout_reference(task)
    updated = task.model_copy(deep=True)
    updated.status = TaskStatus.TIMED_OUT
    updated.timed_out_at = event.at
    updated.updated_at = event.at
    updated.timeout_reason = (
        f"Processing exceeded {task.timeout_threshold}s "
        f"(ran {int(elapsed.total_seconds())}s)"
    )
    for ref in updated.batch_jobs:
        if not ref.is_settled():
            ref.status = BatchStatus.CANCELLED
        ref.job_id = None
    return updated


def _priority_changed(task: GenerationTask, event: PriorityChanged) -> GenerationTask:
    if task.is_terminal():
        raise _invalid(task, event)
    if task.priority == event.priority:
        return task

    updated = task.model_copy(deep=True)
    updated.priority_changed_from = task.priority
    updated.priority = event.priority
    updated.priority_changed_at = event.at
    updated.updated_at = event.at
    return updated


_TRANSITIONS: dict[type[TaskEvent], Callable[[GenerationTask, TaskEvent], GenerationTask]] = {
    TaskStarted: _started,
    BatchProgressed: _batch_progressed,
    TaskFailed: _failed,
    RetryRequested: _retry,
    RunRequested: _run,
    PauseRequested: _pause,
    ResumeRequested: _resume,
    CancelRequested: _cancel,
    TimeoutChecked: _timeout_checked,
    PriorityChanged: _priority_changed,
}

"""
Generation task orchestration.

The service turns caller actions and batch progress into ``transition`` events, persists
the results through the versioned repository, and keeps the side effects in line: one
``generation_batch`` job per unfinished batch, cancelled jobs when a task stops, and the
polling queue entry removed once the task settles.
"""

import uuid
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger

from genqueue.config.logging import get_logger
from genqueue.config.settings import Settings
from genqueue.infra.clock import Clock, utcnow
from genqueue.v1.core.exceptions import (
    GenQueueException,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from genqueue.v1.core.registries import ItemGenerator, PeriodicTriggerHost
from genqueue.v1.jobs.store import JobStore
from genqueue.v1.polling.queue import PollingQueue
from genqueue.v1.tasks.repository import TaskRepository
from genqueue.v1.tasks.schemas import (
    DELETABLE_STATUSES,
    TERMINAL_STATUSES,
    Batch,
    BatchItem,
    BatchRef,
    BatchStatus,
    BulkActionResult,
    GenerationTask,
    ItemStatus,
    TaskStatus,
)
from genqueue.v1.tasks.transitions import (
    BatchProgressed,
    CancelRequested,
    PauseRequested,
    PriorityChanged,
    ResumeRequested,
    RetryRequested,
    RunRequested,
    TaskEvent,
    TaskFailed,
    TaskStarted,
    TimeoutChecked,
    batch_ref_for,
    settle_batch,
    transition,
)

logger = get_logger(__name__)

GENERATION_BATCH_JOB = "generation_batch"
TASK_TIMEOUT_CHECK_JOB = "task_timeout_check"
TIMEOUT_TRIGGER_ID = "check_task_timeouts"

MAX_ITEM_ID_LENGTH = 191

# Statuses each bulk action applies to; everything else is skipped
BULK_ACTION_GATES: dict[str, frozenset[TaskStatus]] = {
    "run": frozenset({TaskStatus.PENDING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    "cancel": frozenset({TaskStatus.PENDING, TaskStatus.PROCESSING}),
    "retry": frozenset({TaskStatus.FAILED}),
    "pause": frozenset({TaskStatus.PROCESSING}),
    "resume": frozenset({TaskStatus.PAUSED}),
    "priority": frozenset(set(TaskStatus) - TERMINAL_STATUSES),
    "delete": DELETABLE_STATUSES,
}


class GenerationTaskService:
    def __init__(
        self,
        repository: TaskRepository,
        jobs: JobStore,
        polling: PollingQueue,
        settings: Settings,
        clock: Clock = utcnow,
        generator: ItemGenerator | None = None,
    ):
        self.repository = repository
        self.jobs = jobs
        self.polling = polling
        self.settings = settings
        self.clock = clock
        self.generator = generator

    # Creation and queries

    async def create_task(
        self,
        workflow_type: str,
        item_ids: list[str],
        priority: int = 10,
        source: str = "manual",
        start: bool = False,
    ) -> GenerationTask:
        """
        Create a task over ``item_ids`` split into batches.

        Blank, overlong and duplicate ids are skipped. Batches hold ``batch_size`` items, or
        ``auto_batch_size`` for automatically triggered generation.

        Raises:
            ValidationError: no usable item id remained
        """
        if not workflow_type:
            raise ValidationError("Workflow type is required")

        valid_ids, skipped = self._clean_item_ids(item_ids)
        if not valid_ids:
            raise ValidationError(
                "No valid items to generate",
                details={"skipped": skipped, "submitted": len(item_ids)},
            )
        if skipped:
            logger.warning("Skipped invalid item ids", skipped=len(skipped))

        now = self.clock()
        task_id = f"gen_{uuid.uuid4().hex}"
        size = self.settings.auto_batch_size if source == "auto" else self.settings.batch_size

        batches: list[Batch] = []
        for offset in range(0, len(valid_ids), size):
            index = len(batches) + 1
            batches.append(
                Batch(
                    batch_id=f"{task_id}_batch_{index}",
                    task_id=task_id,
                    batch_index=index,
                    workflow_type=workflow_type,
                    items=[BatchItem(item_id=i) for i in valid_ids[offset : offset + size]],
                    created_at=now,
                )
            )

        task = GenerationTask(
            id=task_id,
            workflow_type=workflow_type,
            source=source,
            priority=priority,
            total_items=len(valid_ids),
            batch_jobs=[
                BatchRef(
                    batch_id=batch.batch_id,
                    batch_index=batch.batch_index,
                    item_count=len(batch.items),
                )
                for batch in batches
            ],
            max_retries=self.settings.task_max_retries,
            timeout_threshold=self.settings.task_timeout_s,
            created_at=now,
            updated_at=now,
        )
        task = await self.repository.create(task, batches)
        await self.polling.add_to_queue(task.id, workflow_type, valid_ids, priority=priority)

        logger.info(
            "Generation task created",
            task_id=task.id,
            workflow_type=workflow_type,
            total_items=task.total_items,
            batches=len(batches),
            source=source,
        )

        if start:
            task = await self.start_task(task.id)
        return task

    @staticmethod
    def _clean_item_ids(item_ids: list[str]) -> tuple[list[str], list[str]]:
        valid: dict[str, None] = {}
        skipped: list[str] = []
        for raw in item_ids:
            item_id = str(raw).strip() if raw is not None else ""
            if not item_id or len(item_id) > MAX_ITEM_ID_LENGTH:
                skipped.append(str(raw))
                continue
            valid.setdefault(item_id, None)
        return list(valid), skipped

    async def get_task(self, task_id: str) -> GenerationTask:
        return await self.repository.require(task_id)

    async def get_task_status(self, task_id: str) -> dict[str, Any]:
        """Task summary plus per-batch stats."""
        task = await self.repository.require(task_id)
        batches = await self.repository.list_batches(task_id)
        status = task.to_status_dict()
        status["batch_jobs"] = [
            {
                "batch_id": batch.batch_id,
                "batch_index": batch.batch_index,
                "status": batch.status.value,
                "stats": batch.stats.model_dump(),
                "retry_attempt": batch.retry_attempt,
            }
            for batch in batches
        ]
        return status

    async def list_tasks(
        self,
        status: list[TaskStatus] | None = None,
        workflow_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[GenerationTask], int]:
        return await self.repository.list_tasks(status, workflow_type, limit, offset)

    # Lifecycle actions

    async def start_task(self, task_id: str) -> GenerationTask:
        """Queue a batch job for every unfinished batch of a pending or retrying task."""
        task = await self.repository.require(task_id)
        if task.status not in (TaskStatus.PENDING, TaskStatus.RETRYING):
            raise InvalidTransitionError(task.status.value, "start")
        return await self._queue_batches(task)

    async def run_task(self, task_id: str, bulk_action: str | None = None) -> GenerationTask:
        """Start a pending task, retry a failed one or restart a cancelled one."""
        before, task, _ = await self._apply(
            task_id, RunRequested(at=self.clock()), bulk_action
        )
        if before.status != TaskStatus.PENDING:
            await self._reset_batches(task)
            await self.polling.add_to_queue(
                task.id, task.workflow_type, await self._item_ids(task.id), task.priority
            )
        return await self._queue_batches(task)

    async def retry_task(self, task_id: str, bulk_action: str | None = None) -> GenerationTask:
        _, task, _ = await self._apply(task_id, RetryRequested(at=self.clock()), bulk_action)
        await self._reset_batches(task)
        await self.polling.add_to_queue(
            task.id, task.workflow_type, await self._item_ids(task.id), task.priority
        )
        logger.info(
            "Generation task retrying",
            task_id=task.id,
            retry_count=task.retry_count,
            max_retries=task.max_retries,
        )
        return await self._queue_batches(task)

    async def cancel_task(
        self, task_id: str, reason: str | None = None, bulk_action: str | None = None
    ) -> GenerationTask:
        """Cancel a pending or processing task. Cancelling a settled task changes nothing."""
        before, task, changed = await self._apply(
            task_id, CancelRequested(at=self.clock(), reason=reason), bulk_action
        )
        if changed:
            await self._stop_batches(before, task)
            logger.info("Generation task cancelled", task_id=task.id)
        return task

    async def pause_task(self, task_id: str, bulk_action: str | None = None) -> GenerationTask:
        before, task, changed = await self._apply(
            task_id, PauseRequested(at=self.clock()), bulk_action
        )
        if changed:
            await self._cancel_jobs(before)
            logger.info("Generation task paused", task_id=task.id)
        return task

    async def resume_task(self, task_id: str, bulk_action: str | None = None) -> GenerationTask:
        """Restore the paused status and re-trigger only unfinished batches."""
        _, task, _ = await self._apply(task_id, ResumeRequested(at=self.clock()), bulk_action)
        logger.info("Generation task resumed", task_id=task.id, status=task.status.value)
        if task.is_settled():
            await self.polling.mark_generation_complete(task.id)
            return task
        return await self._queue_batches(task)

    async def change_priority(
        self, task_id: str, priority: int, bulk_action: str | None = None
    ) -> GenerationTask:
        """Change priority and re-queue pending batch jobs at the new priority."""
        before, task, changed = await self._apply(
            task_id, PriorityChanged(at=self.clock(), priority=priority), bulk_action
        )
        if not changed:
            return task

        requeue = [
            ref for ref in before.batch_jobs if ref.job_id and ref.status == BatchStatus.PENDING
        ]
        for ref in requeue:
            await self.jobs.cancel_job(ref.job_id)

        if requeue:
            task, _ = await self.repository.update(
                task_id, lambda t: _with_job_ids(t, {ref.batch_id: None for ref in requeue})
            )
            if task.status in (TaskStatus.PENDING, TaskStatus.RETRYING, TaskStatus.PROCESSING):
                task = await self._queue_batches(task)

        logger.info(
            "Generation task priority changed",
            task_id=task.id,
            priority=priority,
            previous=before.priority,
        )
        return task

    async def delete_task(self, task_id: str) -> bool:
        """Delete a settled task and its batches."""
        task = await self.repository.require(task_id)
        if task.status not in DELETABLE_STATUSES:
            raise InvalidTransitionError(task.status.value, "delete")
        deleted = await self.repository.delete(task_id)
        await self.polling.mark_generation_complete(task_id)
        logger.info("Generation task deleted", task_id=task_id)
        return deleted

    async def fail_task(self, task_id: str, reason: str) -> GenerationTask:
        """Record a task-level failure; exhausted retries make it permanent."""
        before, task, changed = await self._apply(
            task_id, TaskFailed(at=self.clock(), reason=reason)
        )
        if changed:
            await self._cancel_jobs(before)
            logger.warning(
                "Generation task failed",
                task_id=task.id,
                status=task.status.value,
                error=reason,
                retry_count=task.retry_count,
            )
            await self.polling.mark_generation_complete(task.id)
        return task

    async def check_task_timeout(self, task_id: str) -> GenerationTask:
        before, task, changed = await self._apply(task_id, TimeoutChecked(at=self.clock()))
        if changed:
            await self._stop_batches(before, task)
            logger.warning(
                "Generation task timed out", task_id=task.id, reason=task.timeout_reason
            )
        return task

    async def check_timeouts(self) -> list[str]:
        """Time out every processing task that ran past its threshold."""
        timed_out = []
        for task_id in await self.repository.list_ids([TaskStatus.PROCESSING]):
            try:
                task = await self.check_task_timeout(task_id)
            except NotFoundError:
                continue
            if task.status == TaskStatus.TIMED_OUT:
                timed_out.append(task_id)

        if timed_out:
            logger.info("Timeout sweep finished", timed_out=len(timed_out))
        return timed_out

    async def cleanup_expired(self) -> int:
        return await self.repository.cleanup_expired()

    async def bulk_action(
        self, action: str, task_ids: list[str], priority: int | None = None
    ) -> BulkActionResult:
        """
        Apply ``action`` to each task whose status allows it.

        Missing and ineligible tasks are reported under ``skipped``; per-task failures
        other than storage errors are reported under ``errors``.
        """
        gate = BULK_ACTION_GATES.get(action)
        if gate is None:
            raise ValidationError(f"Unknown bulk action: {action}")
        if action == "priority" and priority is None:
            raise ValidationError("Priority is required for the priority action")

        result = BulkActionResult(action=action)
        for task_id in dict.fromkeys(task_ids):
            task = await self.repository.get(task_id)
            if task is None:
                result.skipped[task_id] = "not found"
                continue
            if task.status not in gate:
                result.skipped[task_id] = f"status {task.status.value}"
                continue
            exhausted = task.status == TaskStatus.FAILED and not task.can_retry()
            if action in ("run", "retry") and exhausted:
                result.skipped[task_id] = "retries exhausted"
                continue

            try:
                await self._run_bulk_action(action, task_id, priority)
            except StorageError:
                raise
            except InvalidTransitionError as e:
                # Status changed between the gate check and the write
                result.skipped[task_id] = e.message
                continue
            except GenQueueException as e:
                result.errors[task_id] = e.message
                continue
            result.applied.append(task_id)

        logger.info(
            "Bulk task action",
            action=action,
            applied=len(result.applied),
            skipped=len(result.skipped),
            errors=len(result.errors),
        )
        return result

    async def _run_bulk_action(self, action: str, task_id: str, priority: int | None) -> None:
        bulk = f"bulk_{action}"
        if action == "run":
            await self.run_task(task_id, bulk_action=bulk)
        elif action == "cancel":
            await self.cancel_task(task_id, reason="Cancelled by bulk action", bulk_action=bulk)
        elif action == "retry":
            await self.retry_task(task_id, bulk_action=bulk)
        elif action == "pause":
            await self.pause_task(task_id, bulk_action=bulk)
        elif action == "resume":
            await self.resume_task(task_id, bulk_action=bulk)
        elif action == "priority":
            await self.change_priority(task_id, priority, bulk_action=bulk)
        elif action == "delete":
            await self.delete_task(task_id)

    # Batch processing

    async def process_batch(
        self, task_id: str, batch_id: str, context: Any | None = None
    ) -> dict[str, Any]:
        """
        Generate the pending items of one batch.

        The task is re-read before every item: a pause puts the batch back to pending with
        its finished items kept, a cancel or timeout stops it. Results arriving after the
        task settled are ignored.
        """
        if self.generator is None:
            raise GenQueueException(
                "No item generator configured", details={"task_id": task_id}
            )

        task = await self.repository.get(task_id)
        if task is None:
            return _batch_skipped(batch_id, "task not found")
        if task.status in (TaskStatus.PENDING, TaskStatus.RETRYING):
            task, _ = await self.repository.update(
                task_id, lambda t: _start_if_ready(t, self.clock())
            )
        if task.status != TaskStatus.PROCESSING:
            return _batch_skipped(batch_id, f"task {task.status.value}")

        batch = await self.repository.update_batch(
            batch_id, lambda b: _begin_batch(b, self.clock())
        )
        if batch.status != BatchStatus.PROCESSING:
            return _batch_skipped(batch_id, f"batch {batch.status.value}")
        await self._publish_batch(task_id, batch)

        pending = batch.pending_items()
        for position, item in enumerate(pending, start=1):
            current = await self.repository.get(task_id)
            if current is None or current.status != TaskStatus.PROCESSING:
                return await self._interrupt_batch(task_id, batch_id, current)

            try:
                output = await self.generator.generate(
                    task.workflow_type, item.item_id, task_id
                )
                status, error = ItemStatus.COMPLETED, None
            except Exception as e:
                logger.warning(
                    "Item generation failed",
                    task_id=task_id,
                    batch_id=batch_id,
                    item_id=item.item_id,
                    error=str(e),
                )
                output, status = None, ItemStatus.FAILED
                error = str(e) or e.__class__.__name__

            batch = await self.repository.update_batch(
                batch_id,
                lambda b: _record_item(b, item.item_id, status, error, output, self.clock()),
            )
            await self._publish_batch(task_id, batch)

            if context is not None:
                await context.update_progress(
                    position / len(pending) * 100, f"{position}/{len(pending)} items"
                )

        batch = await self.repository.update_batch(
            batch_id, lambda b: settle_batch(b, self.clock())
        )
        await self._finish_if_settled(await self._publish_batch(task_id, batch))

        return {
            "status": batch.status.value,
            "batch_id": batch_id,
            "stats": batch.stats.model_dump(),
        }

    async def fail_batch(
        self, task_id: str, batch_id: str, reason: str
    ) -> GenerationTask | None:
        """
        Settle a batch whose job gave up after its last attempt.

        Items still pending are recorded as failed with ``reason`` and the task outcome
        follows from its batches. A task that never got as far as processing fails as a
        whole. Tasks that already left the active states are left alone.
        """
        task = await self.repository.get(task_id)
        if task is None or task.get_batch_ref(batch_id) is None:
            return None
        if task.status in (TaskStatus.PENDING, TaskStatus.RETRYING):
            return await self.fail_task(task_id, reason)
        if task.status not in (TaskStatus.PROCESSING, TaskStatus.PAUSED):
            return task

        batch = await self.repository.update_batch(
            batch_id, lambda b: _fail_batch(b, reason, self.clock())
        )
        logger.warning(
            "Batch failed",
            task_id=task_id,
            batch_id=batch_id,
            status=batch.status.value,
            error=reason,
        )
        task = await self._publish_batch(task_id, batch)
        await self._finish_if_settled(task)
        return task

    async def _finish_if_settled(self, task: GenerationTask | None) -> None:
        """Drop the polling entry once the task has an outcome; a retry registers it again."""
        if task is None or not task.is_settled():
            return
        await self.polling.mark_generation_complete(task.id)
        logger.info(
            "Generation task finished",
            task_id=task.id,
            status=task.status.value,
            processed=task.processed_count,
            failed=task.failed_count,
        )

    async def _interrupt_batch(
        self, task_id: str, batch_id: str, task: GenerationTask | None
    ) -> dict[str, Any]:
        if task is None:
            return _batch_skipped(batch_id, "task deleted")

        if task.status == TaskStatus.PAUSED:
            batch = await self.repository.update_batch(batch_id, _return_to_pending)
            await self._publish_batch(task_id, batch)
            logger.info("Batch paused", task_id=task_id, batch_id=batch_id)
            return {
                "status": "paused",
                "batch_id": batch_id,
                "stats": batch.stats.model_dump(),
            }

        batch = await self.repository.update_batch(
            batch_id, lambda b: _cancel_batch(b, self.clock())
        )
        logger.info(
            "Batch stopped", task_id=task_id, batch_id=batch_id, task_status=task.status.value
        )
        return {
            "status": "stopped",
            "reason": f"task {task.status.value}",
            "batch_id": batch_id,
            "stats": batch.stats.model_dump(),
        }

    async def _publish_batch(self, task_id: str, batch: Batch) -> GenerationTask | None:
        """Mirror a batch record into its task ref."""
        at = self.clock()

        def mutate(task: GenerationTask) -> GenerationTask:
            ref = batch_ref_for(batch, task.get_batch_ref(batch.batch_id))
            return transition(task, BatchProgressed(at=at, ref=ref))

        if await self.repository.get(task_id) is None:
            return None
        task, _ = await self.repository.update(task_id, mutate)
        return task

    # Helpers

    async def _apply(
        self, task_id: str, event: TaskEvent, bulk_action: str | None = None
    ) -> tuple[GenerationTask, GenerationTask, bool]:
        """Persist ``transition(task, event)``; returns the task before and after."""
        seen: list[GenerationTask] = []

        def mutate(current: GenerationTask) -> GenerationTask:
            seen.append(current)
            updated = transition(current, event)
            if updated is not current and bulk_action:
                updated.bulk_action = bulk_action
                updated.bulk_action_at = event.at
            return updated

        after, changed = await self.repository.update(task_id, mutate)
        return seen[-1], after, changed

    async def _queue_batches(self, task: GenerationTask) -> GenerationTask:
        """Queue a batch job for every unsettled batch without a pending trigger."""
        job_ids: dict[str, str] = {}
        for ref in task.batch_jobs:
            if ref.is_settled() or ref.job_id:
                continue
            job_ids[ref.batch_id] = await self.jobs.queue_job(
                GENERATION_BATCH_JOB,
                {"task_id": task.id, "batch_id": ref.batch_id},
                priority=task.priority,
            )

        if not job_ids:
            return task
        task, _ = await self.repository.update(task.id, lambda t: _with_job_ids(t, job_ids))
        logger.info("Batch jobs queued", task_id=task.id, batches=len(job_ids))
        return task

    async def _cancel_jobs(self, task: GenerationTask) -> None:
        for ref in task.batch_jobs:
            if ref.job_id:
                await self.jobs.cancel_job(ref.job_id)

    async def _stop_batches(self, before: GenerationTask, after: GenerationTask) -> None:
        """Cancel pending triggers and unsettled batch records of a stopped task."""
        await self._cancel_jobs(before)
        now = self.clock()
        for ref in after.batch_jobs:
            if ref.status == BatchStatus.CANCELLED:
                await self.repository.update_batch(ref.batch_id, lambda b: _cancel_batch(b, now))
        await self.polling.mark_generation_complete(after.id)

    async def _reset_batches(self, task: GenerationTask) -> None:
        for ref in task.batch_jobs:
            if ref.status == BatchStatus.PENDING:
                await self.repository.update_batch(ref.batch_id, _reset_batch)

    async def _item_ids(self, task_id: str) -> list[str]:
        batches = await self.repository.list_batches(task_id)
        return [item.item_id for batch in batches for item in batch.items]

    def register_triggers(self, host: PeriodicTriggerHost) -> None:
        """Periodically queue the timeout sweep as a job."""
        host.add_job(
            self.schedule_timeout_check,
            trigger=IntervalTrigger(seconds=self.settings.timeout_check_interval_s),
            id=TIMEOUT_TRIGGER_ID,
            name="Queue task timeout check",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    async def schedule_timeout_check(self) -> str:
        return await self.jobs.queue_job(TASK_TIMEOUT_CHECK_JOB, {}, priority=1)


def _start_if_ready(task: GenerationTask, now) -> GenerationTask:
    if task.status in (TaskStatus.PENDING, TaskStatus.RETRYING):
        return transition(task, TaskStarted(at=now))
    return task


def _with_job_ids(task: GenerationTask, job_ids: dict[str, str | None]) -> GenerationTask:
    changes = {
        ref.batch_id: job_id
        for ref in task.batch_jobs
        for batch_id, job_id in job_ids.items()
        if ref.batch_id == batch_id and ref.job_id != job_id and not ref.is_settled()
    }
    if not changes:
        return task
    updated = task.model_copy(deep=True)
    for ref in updated.batch_jobs:
        if ref.batch_id in changes:
            ref.job_id = changes[ref.batch_id]
    return updated


def _begin_batch(batch: Batch, now) -> Batch:
    if batch.status != BatchStatus.PENDING:
        return batch
    updated = batch.model_copy(deep=True)
    updated.status = BatchStatus.PROCESSING
    updated.started_at = now
    return updated


def _record_item(
    batch: Batch,
    item_id: str,
    status: ItemStatus,
    error: str | None,
    output: dict[str, Any] | None,
    now,
) -> Batch:
    if batch.status != BatchStatus.PROCESSING:
        return batch
    updated = batch.model_copy(deep=True)
    for item in updated.items:
        if item.item_id == item_id and item.status == ItemStatus.PENDING:
            item.status = status
            item.error = error
            if output is None or isinstance(output, dict):
                item.result = output
            else:
                item.result = {"value": output}
            updated.updated_at = now
            return updated
    return batch


def _return_to_pending(batch: Batch) -> Batch:
    if batch.status != BatchStatus.PROCESSING:
        return batch
    return batch.model_copy(update={"status": BatchStatus.PENDING})


def _cancel_batch(batch: Batch, now) -> Batch:
    if batch.is_settled():
        return batch
    updated = batch.model_copy(deep=True)
    updated.status = BatchStatus.CANCELLED
    updated.completed_at = now
    for item in updated.items:
        if item.status == ItemStatus.PENDING:
            item.status = ItemStatus.CANCELLED
    return updated


def _reset_batch(batch: Batch) -> Batch:
    """Put unfinished and failed items back to pending; completed items stay."""
    if batch.status == BatchStatus.COMPLETED:
        return batch
    updated = batch.model_copy(deep=True)
    updated.status = BatchStatus.PENDING
    updated.retry_attempt += 1
    updated.error = None
    updated.completed_at = None
    for item in updated.items:
        if item.status != ItemStatus.COMPLETED:
            item.status = ItemStatus.PENDING
            item.error = None
    return updated


def _batch_skipped(batch_id: str, reason: str) -> dict[str, Any]:
    return {"status": "skipped", "reason": reason, "batch_id": batch_id}


def _fail_batch(batch: Batch, reason: str, now) -> Batch:
    if batch.is_settled():
        return batch
    updated = batch.model_copy(deep=True)
    for item in updated.items:
        if item.status == ItemStatus.PENDING:
            item.status = ItemStatus.FAILED
            item.error = reason
    updated = settle_batch(updated, now)
    if updated.status == BatchStatus.FAILED:
        updated.error = reason
    return updated

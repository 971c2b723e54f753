"""
Built-in job handlers seeded by ``HandlerRegistry.register_default_handlers``.

Each handler implements ``handle(context)`` and returns a result dictionary stored with
the completed job.
"""

from typing import Any

from genqueue.config.logging import get_logger
from genqueue.v1.core.exceptions import ValidationError
from genqueue.v1.core.registries import JobRegistry
from genqueue.v1.jobs.handlers import JobContext, run_failure_hook
from genqueue.v1.jobs.models import Job
from genqueue.v1.jobs.store import JobStore
from genqueue.v1.polling.queue import PollingQueue
from genqueue.v1.tasks.service import (
    GENERATION_BATCH_JOB,
    TASK_TIMEOUT_CHECK_JOB,
    GenerationTaskService,
)

logger = get_logger(__name__)

MAINTENANCE_CLEANUP_JOB = "maintenance_cleanup"


class GenerationBatchHandler:
    """
    Runs one batch of a generation task.

    Payload expected:
    {
        "task_id": "gen_...",
        "batch_id": "gen_..._batch_1"
    }
    """

    def __init__(self, tasks: GenerationTaskService):
        self.tasks = tasks

    async def handle(self, context: JobContext) -> dict[str, Any]:
        task_id = context.payload.get("task_id")
        batch_id = context.payload.get("batch_id")
        if not task_id or not batch_id:
            raise ValidationError(
                "task_id and batch_id are required in payload",
                details={"payload": context.payload},
            )
        return await self.tasks.process_batch(task_id, batch_id, context)

    async def on_failed(self, context: JobContext, error: str) -> None:
        """The job used up its attempts; the batch settles with its pending items failed."""
        task_id = context.payload.get("task_id")
        batch_id = context.payload.get("batch_id")
        if task_id and batch_id:
            await self.tasks.fail_batch(task_id, batch_id, error)


class MaintenanceCleanupHandler:
    """
    Job handler for periodic housekeeping.

    Payload expected:
    {
        "tasks": ["cleanup_jobs", "recover_stuck_jobs", "expire_tasks", "polling"],
        "dry_run": false  # optional
    }
    """

    ALL_TASKS = ("cleanup_jobs", "recover_stuck_jobs", "expire_tasks", "polling")

    def __init__(
        self,
        store: JobStore,
        tasks: GenerationTaskService,
        polling: PollingQueue,
        registry: JobRegistry | None = None,
    ):
        self.store = store
        self.tasks = tasks
        self.polling = polling
        self.registry = registry

    async def handle(self, context: JobContext) -> dict[str, Any]:
        requested = context.payload.get("tasks") or list(self.ALL_TASKS)
        dry_run = bool(context.payload.get("dry_run", False))
        unknown = sorted(set(requested) - set(self.ALL_TASKS))
        if unknown:
            raise ValidationError(
                "Unknown maintenance tasks", details={"unknown": unknown}
            )

        logger.info("Starting maintenance tasks", tasks=requested, dry_run=dry_run)

        steps = {
            "cleanup_jobs": self.store.cleanup_completed_jobs,
            "recover_stuck_jobs": self.recover_stuck_jobs,
            "expire_tasks": self.tasks.cleanup_expired,
            "polling": self.polling.cleanup_stale,
        }
        results: dict[str, Any] = {}
        for position, name in enumerate(requested, start=1):
            if dry_run:
                results[name] = {"status": "dry_run"}
            else:
                results[name] = {"status": "completed", "count": await steps[name]()}
            await context.update_progress(position / len(requested) * 100, name)

        logger.info("Maintenance tasks completed", results=results, dry_run=dry_run)
        return {
            "status": "completed",
            "tasks_processed": requested,
            "dry_run": dry_run,
            "results": results,
        }

    async def recover_stuck_jobs(self) -> int:
        return await self.store.recover_stuck_jobs(on_failed=self._job_gave_up)

    async def _job_gave_up(self, job: Job, error: str) -> None:
        """Run the failure hook of a job whose last attempt was abandoned."""
        if self.registry is None or not self.registry.has(job.type):
            return
        context = JobContext(
            job_id=job.id,
            job_type=job.type,
            payload=dict(job.payload or {}),
            attempt=job.max_attempts,
            progress_hook=self.store.update_progress,
        )
        await run_failure_hook(self.registry.get(job.type), context, error)


class TaskTimeoutCheckHandler:
    """Times out processing tasks that ran past their threshold."""

    def __init__(self, tasks: GenerationTaskService):
        self.tasks = tasks

    async def handle(self, context: JobContext) -> dict[str, Any]:
        timed_out = await self.tasks.check_timeouts()
        return {"status": "completed", "timed_out": timed_out}


def build_default_handlers(
    store: JobStore,
    tasks: GenerationTaskService,
    polling: PollingQueue,
    registry: JobRegistry | None = None,
) -> dict[str, Any]:
    """
    Default handlers keyed by job type.

    ``registry`` is where stuck-job recovery looks up failure hooks.
    """
    return {
        GENERATION_BATCH_JOB: GenerationBatchHandler(tasks),
        MAINTENANCE_CLEANUP_JOB: MaintenanceCleanupHandler(store, tasks, polling, registry),
        TASK_TIMEOUT_CHECK_JOB: TaskTimeoutCheckHandler(tasks),
    }

import asyncio

import pytest

from genqueue.v1.core.exceptions import ValidationError
from genqueue.v1.jobs.default_handlers import (
    MAINTENANCE_CLEANUP_JOB,
    MaintenanceCleanupHandler,
)
from genqueue.v1.jobs.handlers import JobContext
from genqueue.v1.jobs.models import JobStatus
from genqueue.v1.tasks.schemas import BatchStatus, TaskStatus
from genqueue.v1.tasks.service import GENERATION_BATCH_JOB
from genqueue.v1.tasks.transitions import TaskStarted, transition


def make_context(payload, progress):
    async def record_progress(job_id, percent, message):
        progress.append((percent, message))
        return True

    return JobContext(
        job_id="job-1",
        job_type=MAINTENANCE_CLEANUP_JOB,
        payload=payload,
        attempt=1,
        progress_hook=record_progress,
    )


async def finished_job(runtime, clock):
    """A completed job old enough for the retention cleanup."""
    runtime.handlers.register_handler("noop", lambda context: None)
    job_id = await runtime.jobs.queue_job("noop", {})
    await runtime.scheduler.process_jobs()
    clock.advance(25 * 3600)
    return job_id


@pytest.mark.asyncio
async def test_maintenance_runs_every_step_by_default(runtime, clock):
    job_id = await finished_job(runtime, clock)
    handler = runtime.handlers.get_handler(MAINTENANCE_CLEANUP_JOB)
    progress = []

    result = await handler.handle(make_context({}, progress))

    assert isinstance(handler, MaintenanceCleanupHandler)
    assert result["tasks_processed"] == list(MaintenanceCleanupHandler.ALL_TASKS)
    assert result["results"]["cleanup_jobs"] == {"status": "completed", "count": 1}
    assert result["results"]["recover_stuck_jobs"]["count"] == 0
    assert [message for _, message in progress] == list(MaintenanceCleanupHandler.ALL_TASKS)
    assert progress[-1][0] == 100
    assert await runtime.jobs.get_job(job_id) is None


@pytest.mark.asyncio
async def test_maintenance_dry_run_changes_nothing(runtime, clock):
    job_id = await finished_job(runtime, clock)
    handler = runtime.handlers.get_handler(MAINTENANCE_CLEANUP_JOB)

    result = await handler.handle(make_context({"tasks": ["cleanup_jobs"], "dry_run": True}, []))

    assert result["dry_run"] is True
    assert result["results"] == {"cleanup_jobs": {"status": "dry_run"}}
    assert await runtime.jobs.get_job(job_id) is not None


@pytest.mark.asyncio
async def test_maintenance_rejects_unknown_steps(runtime):
    handler = runtime.handlers.get_handler(MAINTENANCE_CLEANUP_JOB)

    with pytest.raises(ValidationError) as exc_info:
        await handler.handle(make_context({"tasks": ["cleanup_jobs", "defrag"]}, []))
    assert exc_info.value.details == {"unknown": ["defrag"]}


@pytest.mark.asyncio
async def test_maintenance_job_through_the_queue(runtime, clock):
    await finished_job(runtime, clock)
    job_id = await runtime.jobs.queue_job(MAINTENANCE_CLEANUP_JOB, {"tasks": ["cleanup_jobs"]})

    await runtime.scheduler.process_jobs()

    job = await runtime.jobs.get_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.result["results"]["cleanup_jobs"]["count"] == 1


@pytest.mark.asyncio
async def test_batch_job_without_ids_is_retried(runtime):
    job_id = await runtime.jobs.queue_job(GENERATION_BATCH_JOB, {"task_id": "gen_x"})

    outcome = await runtime.handlers.process_job(await runtime.jobs.get_job(job_id))

    assert outcome.status == JobStatus.RETRYING
    job = await runtime.jobs.get_job(job_id)
    assert "task_id and batch_id are required" in job.last_error


@pytest.mark.asyncio
async def test_batch_job_for_deleted_task_completes_as_skipped(runtime):
    task = await runtime.tasks.create_task("quiz", ["a"], start=True)
    job_id = task.batch_jobs[0].job_id
    await runtime.tasks.repository.delete(task.id)

    await runtime.scheduler.process_jobs()

    job = await runtime.jobs.get_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.result["status"] == "skipped"
    assert job.result["reason"] == "task not found"


async def stall(item_id):
    await asyncio.sleep(5)


async def run_every_attempt(runtime, settings, clock):
    for _ in range(settings.job_max_attempts):
        await runtime.scheduler.process_jobs()
        clock.advance(settings.job_max_backoff_s)


@pytest.mark.asyncio
async def test_batch_job_timing_out_every_attempt_fails_the_task(
    runtime, generator, settings, clock
):
    settings.job_timeout_s = 0.5
    generator.before_generate = stall
    task = await runtime.tasks.create_task("quiz", ["a", "b"], start=True)
    job_id = task.batch_jobs[0].job_id

    await run_every_attempt(runtime, settings, clock)

    job = await runtime.jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == settings.job_max_attempts

    failed = await runtime.tasks.get_task(task.id)
    assert failed.status == TaskStatus.FAILED
    assert failed.failed_count == 2
    ref = failed.batch_jobs[0]
    assert ref.status == BatchStatus.FAILED
    assert ref.job_id is None
    batch = await runtime.tasks.repository.get_batch(ref.batch_id)
    assert "timed out" in batch.error
    assert all("timed out" in item.error for item in batch.items)
    assert await runtime.polling.get_entry(task.id) is None

    # The failed batch is picked up again by a retry
    generator.before_generate = None
    retried = await runtime.tasks.retry_task(task.id)
    assert retried.batch_jobs[0].job_id not in (None, job_id)
    await runtime.scheduler.process_jobs()

    done = await runtime.tasks.get_task(task.id)
    assert done.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_batch_job_giving_up_keeps_completed_items(runtime, generator, settings):
    settings.job_timeout_s = 0.5
    settings.job_max_attempts = 1

    async def stall_on_b(item_id):
        if item_id == "b":
            await stall(item_id)

    generator.before_generate = stall_on_b
    task = await runtime.tasks.create_task("quiz", ["a", "b", "c"], start=True)

    await runtime.scheduler.process_jobs()

    status = await runtime.tasks.get_task_status(task.id)
    assert status["status"] == TaskStatus.COMPLETED_WITH_ERRORS.value
    assert status["batch_jobs"][0]["status"] == BatchStatus.COMPLETED_WITH_ERRORS.value
    assert status["batch_jobs"][0]["stats"] == {"total": 3, "completed": 1, "failed": 2}


@pytest.mark.asyncio
async def test_batch_jobs_without_a_generator_fail_the_task(runtime, settings, clock):
    runtime.tasks.generator = None
    task = await runtime.tasks.create_task("quiz", ["a"], start=True)

    await run_every_attempt(runtime, settings, clock)

    failed = await runtime.tasks.get_task(task.id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error == "No item generator configured"
    assert failed.can_retry() is True
    assert await runtime.polling.get_entry(task.id) is None


@pytest.mark.asyncio
async def test_recovering_abandoned_batch_job_settles_the_task(runtime, settings, clock):
    settings.job_max_attempts = 1
    task = await runtime.tasks.create_task("quiz", ["a", "b"], start=True)
    await runtime.tasks.repository.update(
        task.id, lambda t: transition(t, TaskStarted(at=t.created_at))
    )
    job_id = task.batch_jobs[0].job_id
    # Claimed by a tick that never came back
    await runtime.jobs.mark_processing(job_id)
    clock.advance(settings.job_timeout_s + settings.lock_ttl_s + 1)
    handler = runtime.handlers.get_handler(MAINTENANCE_CLEANUP_JOB)

    result = await handler.handle(make_context({"tasks": ["recover_stuck_jobs"]}, []))

    assert result["results"]["recover_stuck_jobs"]["count"] == 1
    assert (await runtime.jobs.get_job(job_id)).status == JobStatus.FAILED.value
    failed = await runtime.tasks.get_task(task.id)
    assert failed.status == TaskStatus.FAILED
    assert failed.batch_jobs[0].status == BatchStatus.FAILED
    assert failed.batch_jobs[0].job_id is None

from datetime import timedelta

import pytest

from genqueue.v1.jobs.models import JobStatus
from genqueue.v1.jobs.scheduler import (
    CLEANUP_TRIGGER_ID,
    PROCESS_TRIGGER_ID,
    PROCESSING_LOCK_KEY,
)
from genqueue.v1.polling.queue import POLLING_TRIGGER_ID
from genqueue.v1.tasks.service import TIMEOUT_TRIGGER_ID


@pytest.fixture
async def recorder(runtime):
    """Register a handler that records the order jobs ran in."""
    ran: list[str] = []

    async def record(context):
        ran.append(context.payload["name"])
        return {"name": context.payload["name"]}

    runtime.scheduler.register_handler("record", record)
    return ran


@pytest.mark.asyncio
async def test_tick_processes_at_most_max_concurrent_jobs(runtime, recorder):
    ids = [
        await runtime.scheduler.queue_job("record", {"name": f"job-{n}"}) for n in range(5)
    ]

    result = await runtime.scheduler.process_jobs()

    assert result.skipped is False
    assert result.processed == 3
    assert [o.status for o in result.outcomes] == [JobStatus.COMPLETED] * 3
    statuses = [(await runtime.jobs.get_job(job_id)).status for job_id in ids]
    assert statuses.count(JobStatus.COMPLETED.value) == 3
    assert statuses.count(JobStatus.QUEUED.value) == 2

    second = await runtime.scheduler.process_jobs()
    assert second.processed == 2


@pytest.mark.asyncio
async def test_tick_runs_jobs_in_priority_order(runtime, recorder, clock):
    await runtime.scheduler.queue_job("record", {"name": "low"}, priority=20)
    await runtime.scheduler.queue_job("record", {"name": "high"}, priority=1)
    await runtime.scheduler.queue_job("record", {"name": "normal"})

    await runtime.scheduler.process_jobs()

    assert recorder == ["high", "normal", "low"]


@pytest.mark.asyncio
async def test_tick_skipped_when_lock_held(runtime, recorder):
    await runtime.scheduler.queue_job("record", {"name": "waiting"})
    other = runtime.lock.new_token()
    await runtime.lock.acquire(PROCESSING_LOCK_KEY, other, 300)

    result = await runtime.scheduler.process_jobs()

    assert result.skipped is True
    assert result.processed == 0
    assert recorder == []
    # The skipped tick did not release someone else's lock
    info = await runtime.lock.get_info(PROCESSING_LOCK_KEY)
    assert info.token == other


@pytest.mark.asyncio
async def test_tick_releases_lock(runtime, recorder):
    await runtime.scheduler.queue_job("record", {"name": "one"})

    await runtime.scheduler.process_jobs()

    assert await runtime.lock.is_locked(PROCESSING_LOCK_KEY) is False


@pytest.mark.asyncio
async def test_stale_tick_lock_is_taken_over(runtime, recorder, clock, settings):
    await runtime.lock.acquire(PROCESSING_LOCK_KEY, runtime.lock.new_token(), settings.lock_ttl_s)
    await runtime.scheduler.queue_job("record", {"name": "after-crash"})

    clock.advance(settings.lock_ttl_s + 1)
    result = await runtime.scheduler.process_jobs()

    assert result.processed == 1
    assert recorder == ["after-crash"]


@pytest.mark.asyncio
async def test_lock_renewed_before_each_job(runtime, clock):
    held = []

    async def slow(context):
        held.append(await runtime.lock.is_locked(PROCESSING_LOCK_KEY))
        # Each job takes most of the lock lifetime
        clock.advance(200)

    runtime.scheduler.register_handler("slow", slow)
    for n in range(3):
        await runtime.scheduler.queue_job("slow", {"n": n})

    result = await runtime.scheduler.process_jobs()

    assert result.processed == 3
    assert result.lock_lost is False
    assert held == [True, True, True]


@pytest.mark.asyncio
async def test_tick_stops_after_losing_the_lock(runtime, clock, settings):
    other = runtime.lock.new_token()
    ran = []

    async def stall(context):
        ran.append(context.payload["n"])
        clock.advance(settings.lock_ttl_s + 1)
        await runtime.lock.acquire(PROCESSING_LOCK_KEY, other, settings.lock_ttl_s)

    runtime.scheduler.register_handler("stall", stall)
    ids = [await runtime.scheduler.queue_job("stall", {"n": n}) for n in range(3)]

    result = await runtime.scheduler.process_jobs()

    assert result.lock_lost is True
    assert result.processed == 1
    assert len(ran) == 1
    statuses = [(await runtime.jobs.get_job(job_id)).status for job_id in ids]
    assert statuses.count(JobStatus.QUEUED.value) == 2
    info = await runtime.lock.get_info(PROCESSING_LOCK_KEY)
    assert info.token == other


@pytest.mark.asyncio
async def test_failed_job_waits_for_backoff(runtime, clock):
    calls = []

    async def flaky(context):
        calls.append(context.attempt)
        if context.attempt == 1:
            raise RuntimeError("first attempt fails")
        return {"ok": True}

    runtime.scheduler.register_handler("flaky", flaky)
    job_id = await runtime.scheduler.queue_job("flaky", {})

    first = await runtime.scheduler.process_jobs()
    assert first.outcomes[0].status == JobStatus.RETRYING
    assert first.outcomes[0].next_run_at == clock.now + timedelta(seconds=60)

    assert (await runtime.scheduler.process_jobs()).processed == 0

    clock.advance(60)
    third = await runtime.scheduler.process_jobs()
    assert third.outcomes[0].status == JobStatus.COMPLETED
    assert calls == [1, 2]
    status = await runtime.scheduler.get_job_status(job_id)
    assert status["attempts"] == 1


@pytest.mark.asyncio
async def test_facade_progress_and_cancel(runtime):
    job_id = await runtime.scheduler.queue_job("record", {"name": "facade"})

    assert await runtime.scheduler.update_progress(job_id, 40, "working") is True
    assert await runtime.scheduler.cancel_job(job_id) is True

    status = await runtime.scheduler.get_job_status(job_id)
    assert status["status"] == JobStatus.CANCELLED.value
    assert status["progress"] == 40


@pytest.mark.asyncio
async def test_statistics_include_scheduler_state(runtime, recorder):
    await runtime.scheduler.queue_job("record", {"name": "stats"})
    await runtime.scheduler.process_jobs()

    stats = await runtime.scheduler.get_statistics()

    assert stats["by_status"]["completed"] == 1
    assert "record" in stats["registered_handlers"]
    assert "generation_batch" in stats["registered_handlers"]
    assert stats["lock_held"] is False
    assert stats["timers"]["background_job_record"]["count"] == 1


@pytest.mark.asyncio
async def test_cleanup_removes_old_jobs_and_expired_locks(runtime, recorder, clock):
    await runtime.scheduler.queue_job("record", {"name": "old"})
    await runtime.scheduler.process_jobs()
    await runtime.lock.acquire("orphan", runtime.lock.new_token(), 60)

    clock.advance(25 * 3600)
    deleted = await runtime.scheduler.cleanup_completed_jobs()

    assert deleted == 1
    assert await runtime.lock.get_info("orphan") is None


@pytest.mark.asyncio
async def test_init_registers_interval_triggers(runtime, trigger_host, settings):
    runtime.scheduler.init(trigger_host)

    process = trigger_host.jobs[PROCESS_TRIGGER_ID]
    cleanup = trigger_host.jobs[CLEANUP_TRIGGER_ID]
    assert process["func"] == runtime.scheduler.process_jobs
    assert process["trigger"].interval == timedelta(seconds=settings.process_interval_s)
    assert process["max_instances"] == 1
    assert process["replace_existing"] is True
    assert cleanup["func"] == runtime.scheduler.cleanup_completed_jobs
    assert cleanup["trigger"].interval == timedelta(seconds=settings.cleanup_interval_s)


@pytest.mark.asyncio
async def test_runtime_registers_all_periodic_triggers(runtime, trigger_host):
    runtime.register_triggers(trigger_host)

    assert set(trigger_host.jobs) == {
        PROCESS_TRIGGER_ID,
        CLEANUP_TRIGGER_ID,
        POLLING_TRIGGER_ID,
        TIMEOUT_TRIGGER_ID,
    }

from datetime import UTC, datetime, timedelta

import pytest

from genqueue.v1.core.exceptions import InvalidTransitionError
from genqueue.v1.tasks.schemas import (
    Batch,
    BatchItem,
    BatchRef,
    BatchStatus,
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
    TaskFailed,
    TaskStarted,
    TimeoutChecked,
    settle_batch,
    transition,
)

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


def make_task(status=TaskStatus.PROCESSING, refs=None, **fields) -> GenerationTask:
    refs = refs if refs is not None else [
        BatchRef(batch_id="t_batch_1", batch_index=1, item_count=5, job_id="job-1"),
        BatchRef(batch_id="t_batch_2", batch_index=2, item_count=5, job_id="job-2"),
    ]
    return GenerationTask(
        id="t",
        workflow_type="quiz",
        status=status,
        total_items=sum(ref.item_count for ref in refs),
        batch_jobs=refs,
        created_at=NOW - timedelta(minutes=5),
        started_at=NOW - timedelta(minutes=1) if status != TaskStatus.PENDING else None,
        **fields,
    )


def settled_ref(batch_id, index, completed, failed, status=None):
    if status is None:
        if failed == 0:
            status = BatchStatus.COMPLETED
        elif completed == 0:
            status = BatchStatus.FAILED
        else:
            status = BatchStatus.COMPLETED_WITH_ERRORS
    return BatchRef(
        batch_id=batch_id,
        batch_index=index,
        item_count=completed + failed,
        status=status,
        completed_count=completed,
        failed_count=failed,
    )


class TestStart:
    def test_pending_task_starts(self):
        task = make_task(TaskStatus.PENDING)

        started = transition(task, TaskStarted(at=NOW))

        assert started.status == TaskStatus.PROCESSING
        assert started.started_at == NOW
        assert task.status == TaskStatus.PENDING  # input untouched

    def test_start_while_processing_changes_nothing(self):
        task = make_task(TaskStatus.PROCESSING)
        assert transition(task, TaskStarted(at=NOW)) is task

    def test_start_from_completed_is_invalid(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(make_task(TaskStatus.COMPLETED), TaskStarted(at=NOW))
        assert exc_info.value.current_status == "completed"
        assert exc_info.value.event == "start"


class TestBatchProgress:
    def test_progress_derived_from_completed_items(self):
        task = make_task(
            refs=[BatchRef(batch_id="t_batch_1", batch_index=1, item_count=50)]
        )
        ref = BatchRef(
            batch_id="t_batch_1",
            batch_index=1,
            item_count=50,
            status=BatchStatus.PROCESSING,
            completed_count=10,
        )

        updated = transition(task, BatchProgressed(at=NOW, ref=ref))

        assert updated.progress == 20.0
        assert updated.processed_count == 10
        assert updated.status == TaskStatus.PROCESSING

    def test_all_batches_completed(self):
        task = make_task()
        task = transition(
            task, BatchProgressed(at=NOW, ref=settled_ref("t_batch_1", 1, 5, 0))
        )
        assert task.status == TaskStatus.PROCESSING

        task = transition(
            task, BatchProgressed(at=NOW, ref=settled_ref("t_batch_2", 2, 5, 0))
        )

        assert task.status == TaskStatus.COMPLETED
        assert task.progress == 100.0
        assert task.completed_at == NOW

    def test_partial_failure_completes_with_errors(self):
        task = make_task()
        task = transition(
            task, BatchProgressed(at=NOW, ref=settled_ref("t_batch_1", 1, 5, 0))
        )
        task = transition(
            task, BatchProgressed(at=NOW, ref=settled_ref("t_batch_2", 2, 3, 2))
        )

        assert task.status == TaskStatus.COMPLETED_WITH_ERRORS
        assert task.processed_count == 8
        assert task.failed_count == 2
        assert task.progress == 80.0
        assert task.is_terminal()

    def test_all_items_failed_fails_task(self):
        task = make_task(refs=[BatchRef(batch_id="t_batch_1", batch_index=1, item_count=3)])

        task = transition(
            task, BatchProgressed(at=NOW, ref=settled_ref("t_batch_1", 1, 0, 3))
        )

        assert task.status == TaskStatus.FAILED
        assert task.failed_at == NOW
        assert task.can_retry()

    def test_identical_ref_is_a_no_op(self):
        task = make_task()
        assert transition(task, BatchProgressed(at=NOW, ref=task.batch_jobs[0])) is task

    def test_unknown_batch_is_invalid(self):
        ref = BatchRef(batch_id="other", batch_index=9, item_count=1)
        with pytest.raises(InvalidTransitionError):
            transition(make_task(), BatchProgressed(at=NOW, ref=ref))

    def test_late_result_after_cancel_changes_nothing(self):
        task = make_task(TaskStatus.CANCELLED)

        updated = transition(
            task, BatchProgressed(at=NOW, ref=settled_ref("t_batch_1", 1, 5, 0))
        )

        assert updated is task

    def test_progress_recorded_while_paused_without_settling(self):
        refs = [BatchRef(batch_id="t_batch_1", batch_index=1, item_count=5)]
        task = make_task(TaskStatus.PAUSED, refs=refs, paused_from_status=TaskStatus.PROCESSING)

        updated = transition(
            task, BatchProgressed(at=NOW, ref=settled_ref("t_batch_1", 1, 5, 0))
        )

        assert updated.status == TaskStatus.PAUSED
        assert updated.processed_count == 5

        resumed = transition(updated, ResumeRequested(at=NOW))
        assert resumed.status == TaskStatus.COMPLETED


class TestRetry:
    def test_retry_increments_count_and_resets_unfinished_batches(self):
        refs = [
            settled_ref("t_batch_1", 1, 5, 0),
            settled_ref("t_batch_2", 2, 0, 5),
        ]
        task = make_task(TaskStatus.FAILED, refs=refs, retry_count=0)

        retried = transition(task, RetryRequested(at=NOW))

        assert retried.status == TaskStatus.RETRYING
        assert retried.retry_count == 1
        assert retried.last_retry_at == NOW
        assert retried.batch_jobs[0].status == BatchStatus.COMPLETED
        assert retried.batch_jobs[1].status == BatchStatus.PENDING
        assert retried.batch_jobs[1].failed_count == 0
        assert retried.processed_count == 5

    def test_last_retry_then_failure_is_permanent(self):
        refs = [settled_ref("t_batch_1", 1, 0, 5)]
        task = make_task(TaskStatus.FAILED, refs=refs, retry_count=2, max_retries=3)

        task = transition(task, RetryRequested(at=NOW))
        assert task.status == TaskStatus.RETRYING
        assert task.retry_count == 3

        task = transition(task, TaskStarted(at=NOW))
        task = transition(
            task, BatchProgressed(at=NOW, ref=settled_ref("t_batch_1", 1, 0, 5))
        )

        assert task.status == TaskStatus.FAILED_PERMANENT
        assert "retries exhausted" in task.permanent_failure_reason
        assert task.is_terminal()

    def test_retry_with_exhausted_budget_is_invalid(self):
        task = make_task(TaskStatus.FAILED, retry_count=3, max_retries=3)

        assert not task.can_retry()
        with pytest.raises(InvalidTransitionError):
            transition(task, RetryRequested(at=NOW))

    def test_retry_only_from_failed(self):
        with pytest.raises(InvalidTransitionError):
            transition(make_task(TaskStatus.COMPLETED), RetryRequested(at=NOW))


class TestRun:
    def test_run_pending_changes_nothing(self):
        task = make_task(TaskStatus.PENDING)
        assert transition(task, RunRequested(at=NOW)) is task

    def test_run_failed_retries(self):
        task = make_task(TaskStatus.FAILED)

        assert transition(task, RunRequested(at=NOW)).status == TaskStatus.RETRYING

    def test_run_cancelled_restarts(self):
        refs = [
            settled_ref("t_batch_1", 1, 5, 0),
            BatchRef(
                batch_id="t_batch_2", batch_index=2, item_count=5, status=BatchStatus.CANCELLED
            ),
        ]
        task = make_task(TaskStatus.CANCELLED, refs=refs, cancelled_at=NOW)

        restarted = transition(task, RunRequested(at=NOW))

        assert restarted.status == TaskStatus.PENDING
        assert restarted.cancelled_at is None
        assert restarted.batch_jobs[1].status == BatchStatus.PENDING
        assert restarted.batch_jobs[0].status == BatchStatus.COMPLETED

    def test_run_processing_is_invalid(self):
        with pytest.raises(InvalidTransitionError):
            transition(make_task(TaskStatus.PROCESSING), RunRequested(at=NOW))


class TestPauseResume:
    def test_pause_processing_task(self):
        task = make_task(TaskStatus.PROCESSING)

        paused = transition(task, PauseRequested(at=NOW))

        assert paused.status == TaskStatus.PAUSED
        assert paused.paused_from_status == TaskStatus.PROCESSING
        assert paused.paused_at == NOW
        assert all(ref.job_id is None for ref in paused.batch_jobs)

    def test_pause_requires_processing(self):
        with pytest.raises(InvalidTransitionError):
            transition(make_task(TaskStatus.PENDING), PauseRequested(at=NOW))

    def test_resume_restores_status(self):
        paused = transition(make_task(TaskStatus.PROCESSING), PauseRequested(at=NOW))
        later = NOW + timedelta(minutes=10)

        resumed = transition(paused, ResumeRequested(at=later))

        assert resumed.status == TaskStatus.PROCESSING
        assert resumed.paused_from_status is None
        assert resumed.paused_at is None
        assert resumed.resumed_at == later

    def test_resume_requires_paused(self):
        with pytest.raises(InvalidTransitionError):
            transition(make_task(TaskStatus.PROCESSING), ResumeRequested(at=NOW))

    def test_failure_while_paused(self):
        paused = transition(make_task(TaskStatus.PROCESSING), PauseRequested(at=NOW))

        failed = transition(paused, TaskFailed(at=NOW, reason="upstream gone"))

        assert failed.status == TaskStatus.FAILED
        assert failed.paused_from_status is None
        assert failed.error == "upstream gone"


class TestCancel:
    def test_cancel_processing_task(self):
        refs = [
            settled_ref("t_batch_1", 1, 5, 0),
            BatchRef(batch_id="t_batch_2", batch_index=2, item_count=5, job_id="job-2"),
        ]
        task = make_task(TaskStatus.PROCESSING, refs=refs)

        cancelled = transition(task, CancelRequested(at=NOW, reason="no longer needed"))

        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert cancelled.error == "no longer needed"
        assert cancelled.batch_jobs[0].status == BatchStatus.COMPLETED
        assert cancelled.batch_jobs[1].status == BatchStatus.CANCELLED
        assert all(ref.job_id is None for ref in cancelled.batch_jobs)

    def test_cancel_terminal_task_changes_nothing(self):
        task = make_task(TaskStatus.COMPLETED)
        assert transition(task, CancelRequested(at=NOW)) is task

    def test_cancel_paused_task_is_invalid(self):
        paused = transition(make_task(TaskStatus.PROCESSING), PauseRequested(at=NOW))
        with pytest.raises(InvalidTransitionError):
            transition(paused, CancelRequested(at=NOW))


class TestTimeout:
    def test_processing_task_times_out(self):
        task = make_task(TaskStatus.PROCESSING, timeout_threshold=3600)
        task = task.model_copy(update={"started_at": NOW - timedelta(seconds=3601)})

        timed_out = transition(task, TimeoutChecked(at=NOW))

        assert timed_out.status == TaskStatus.TIMED_OUT
        assert timed_out.timed_out_at == NOW
        assert "3600s" in timed_out.timeout_reason
        assert all(ref.status == BatchStatus.CANCELLED for ref in timed_out.batch_jobs)

    def test_within_threshold_changes_nothing(self):
        task = make_task(TaskStatus.PROCESSING, timeout_threshold=3600)
        assert transition(task, TimeoutChecked(at=NOW)) is task

    def test_resume_restarts_timeout_clock(self):
        task = make_task(
            TaskStatus.PROCESSING,
            timeout_threshold=3600,
            resumed_at=NOW - timedelta(seconds=60),
        )
        task = task.model_copy(update={"started_at": NOW - timedelta(hours=5)})

        assert transition(task, TimeoutChecked(at=NOW)) is task

    def test_only_processing_tasks_time_out(self):
        task = make_task(TaskStatus.PENDING, timeout_threshold=1)
        assert transition(task, TimeoutChecked(at=NOW + timedelta(days=1))) is task


class TestPriority:
    def test_priority_change_is_recorded(self):
        task = make_task(TaskStatus.PENDING, priority=10)

        updated = transition(task, PriorityChanged(at=NOW, priority=1))

        assert updated.priority == 1
        assert updated.priority_changed_from == 10
        assert updated.priority_changed_at == NOW

    def test_same_priority_changes_nothing(self):
        task = make_task(TaskStatus.PENDING, priority=10)
        assert transition(task, PriorityChanged(at=NOW, priority=10)) is task

    def test_terminal_task_priority_is_invalid(self):
        with pytest.raises(InvalidTransitionError):
            transition(make_task(TaskStatus.COMPLETED), PriorityChanged(at=NOW, priority=1))


def make_batch(*statuses: ItemStatus) -> Batch:
    return Batch(
        batch_id="t_batch_1",
        task_id="t",
        batch_index=1,
        workflow_type="quiz",
        status=BatchStatus.PROCESSING,
        items=[BatchItem(item_id=f"i{n}", status=s) for n, s in enumerate(statuses)],
        created_at=NOW,
    )


def test_settle_batch_with_mixed_results():
    batch = make_batch(ItemStatus.COMPLETED, ItemStatus.COMPLETED, ItemStatus.FAILED)

    settled = settle_batch(batch, NOW)

    assert settled.status == BatchStatus.COMPLETED_WITH_ERRORS
    assert settled.stats.model_dump() == {"total": 3, "completed": 2, "failed": 1}
    assert settled.completed_at == NOW


def test_settle_batch_all_failed():
    settled = settle_batch(make_batch(ItemStatus.FAILED, ItemStatus.FAILED), NOW)

    assert settled.status == BatchStatus.FAILED
    assert settled.error == "All 2 items failed"


def test_settle_batch_with_pending_items_is_unchanged():
    batch = make_batch(ItemStatus.COMPLETED, ItemStatus.PENDING)
    assert settle_batch(batch, NOW) is batch


def test_unknown_event_type():
    class Unknown(TaskStarted):
        pass

    with pytest.raises(TypeError, match="Unknown task event"):
        transition(make_task(), Unknown(at=NOW))

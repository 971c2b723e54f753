import pytest

from genqueue.v1.core.exceptions import NotFoundError, StaleVersionError
from genqueue.v1.tasks.repository import TaskRepository
from genqueue.v1.tasks.schemas import (
    Batch,
    BatchItem,
    BatchRef,
    BatchStatus,
    GenerationTask,
    TaskStatus,
)


@pytest.fixture
async def repository(runtime, settings, clock):
    return TaskRepository(runtime.database, settings, clock)


def build_task(clock, task_id="gen_test", status=TaskStatus.PENDING, workflow="quiz"):
    task = GenerationTask(
        id=task_id,
        workflow_type=workflow,
        status=status,
        total_items=2,
        batch_jobs=[BatchRef(batch_id=f"{task_id}_batch_1", batch_index=1, item_count=2)],
        created_at=clock(),
    )
    batch = Batch(
        batch_id=f"{task_id}_batch_1",
        task_id=task_id,
        batch_index=1,
        workflow_type=workflow,
        items=[BatchItem(item_id="a"), BatchItem(item_id="b")],
        created_at=clock(),
    )
    return task, [batch]


@pytest.mark.asyncio
async def test_create_stores_version_one(repository, clock):
    task, batches = build_task(clock)

    created = await repository.create(task, batches)
    loaded = await repository.get(task.id)

    assert created.version == 1
    assert loaded.version == 1
    assert loaded.batch_jobs[0].batch_id == "gen_test_batch_1"
    assert (await repository.get_batch("gen_test_batch_1")).version == 1


@pytest.mark.asyncio
async def test_require_missing_task(repository):
    assert await repository.get("missing") is None
    with pytest.raises(NotFoundError):
        await repository.require("missing")


@pytest.mark.asyncio
async def test_save_with_stale_version_fails(repository, clock):
    task, batches = build_task(clock)
    created = await repository.create(task, batches)

    saved = await repository.save(created.model_copy(update={"priority": 3}))
    assert saved.version == 2

    with pytest.raises(StaleVersionError) as exc_info:
        await repository.save(created.model_copy(update={"priority": 5}))
    assert exc_info.value.expected_version == 1
    assert (await repository.get(task.id)).priority == 3


@pytest.mark.asyncio
async def test_update_without_change_writes_nothing(repository, clock):
    task, batches = build_task(clock)
    await repository.create(task, batches)

    stored, changed = await repository.update(task.id, lambda current: current)

    assert changed is False
    assert stored.version == 1


@pytest.mark.asyncio
async def test_update_reapplies_mutation_after_conflict(repository, clock, monkeypatch):
    task, batches = build_task(clock)
    await repository.create(task, batches)

    original_save = repository.save
    calls = []

    async def racing_save(updated):
        calls.append(updated.version)
        if len(calls) == 1:
            # Another writer bumps the version between our read and write
            current = await repository.get(updated.id)
            await original_save(current.model_copy(update={"workflow_type": "flashcards"}))
        return await original_save(updated)

    monkeypatch.setattr(repository, "save", racing_save)

    stored, changed = await repository.update(
        task.id, lambda current: current.model_copy(update={"priority": 1})
    )

    assert changed is True
    assert calls == [1, 2]
    assert stored.priority == 1
    assert stored.workflow_type == "flashcards"
    assert stored.version == 3


@pytest.mark.asyncio
async def test_update_gives_up_after_repeated_conflicts(repository, clock, monkeypatch):
    task, batches = build_task(clock)
    await repository.create(task, batches)

    async def always_stale(updated):
        raise StaleVersionError(updated.id, updated.version)

    monkeypatch.setattr(repository, "save", always_stale)

    with pytest.raises(StaleVersionError):
        await repository.update(
            task.id, lambda current: current.model_copy(update={"priority": 1})
        )


@pytest.mark.asyncio
async def test_update_batch(repository, clock):
    task, batches = build_task(clock)
    await repository.create(task, batches)

    def mark_processing(batch):
        return batch.model_copy(update={"status": BatchStatus.PROCESSING})

    stored = await repository.update_batch("gen_test_batch_1", mark_processing)

    assert stored.status == BatchStatus.PROCESSING
    assert stored.version == 2
    assert [b.batch_id for b in await repository.list_batches(task.id)] == [
        "gen_test_batch_1"
    ]

    with pytest.raises(NotFoundError):
        await repository.update_batch("missing", mark_processing)


@pytest.mark.asyncio
async def test_delete_removes_task_and_batches(repository, clock):
    task, batches = build_task(clock)
    await repository.create(task, batches)

    assert await repository.delete(task.id) is True
    assert await repository.get(task.id) is None
    assert await repository.list_batches(task.id) == []
    assert await repository.delete(task.id) is False


@pytest.mark.asyncio
async def test_list_tasks_filters_and_counts(repository, clock):
    for n, (status, workflow) in enumerate(
        [
            (TaskStatus.PENDING, "quiz"),
            (TaskStatus.PROCESSING, "quiz"),
            (TaskStatus.COMPLETED, "flashcards"),
        ]
    ):
        clock.advance(1)
        task, batches = build_task(clock, f"gen_{n}", status, workflow)
        await repository.create(task, batches)

    tasks, total = await repository.list_tasks()
    assert total == 3
    assert [t.id for t in tasks] == ["gen_2", "gen_1", "gen_0"]

    tasks, total = await repository.list_tasks(status=[TaskStatus.PENDING, TaskStatus.PROCESSING])
    assert total == 2

    tasks, total = await repository.list_tasks(workflow_type="flashcards")
    assert [t.id for t in tasks] == ["gen_2"]

    tasks, total = await repository.list_tasks(limit=1, offset=1)
    assert total == 3
    assert [t.id for t in tasks] == ["gen_1"]

    assert await repository.list_ids([TaskStatus.PROCESSING]) == ["gen_1"]


@pytest.mark.asyncio
async def test_cleanup_expired(repository, clock, settings):
    task, batches = build_task(clock)
    await repository.create(task, batches)

    assert await repository.cleanup_expired() == 0

    clock.advance(settings.task_ttl_s + 1)

    assert await repository.cleanup_expired() == 1
    assert await repository.get(task.id) is None
    assert await repository.get_batch("gen_test_batch_1") is None

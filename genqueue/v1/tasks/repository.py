"""
Versioned persistence for generation tasks and batches.

Writes are compare-and-swap: ``UPDATE ... WHERE id = :id AND version = :seen`` bumping the
version. ``update`` and ``update_batch`` take a pure mutation, and on a lost race reload the
record and apply the mutation again to the fresh state.
"""

from collections.abc import Callable
from datetime import timedelta

from sqlalchemy import and_, delete, func, select, update

from genqueue.config.logging import get_logger
from genqueue.config.settings import Settings
from genqueue.infra.clock import Clock, utcnow
from genqueue.infra.database import Database, storage_errors
from genqueue.v1.core.exceptions import NotFoundError, StaleVersionError
from genqueue.v1.tasks.models import GenerationBatchRecord, GenerationTaskRecord
from genqueue.v1.tasks.schemas import Batch, GenerationTask, TaskStatus

logger = get_logger(__name__)

TaskMutation = Callable[[GenerationTask], GenerationTask]
BatchMutation = Callable[[Batch], Batch]


class TaskRepository:
    def __init__(self, database: Database, settings: Settings, clock: Clock = utcnow):
        self.database = database
        self.settings = settings
        self.clock = clock

    def _expires_at(self):
        return self.clock() + timedelta(seconds=self.settings.task_ttl_s)

    async def create(self, task: GenerationTask, batches: list[Batch]) -> GenerationTask:
        """Insert a new task with its batches, all at version 1."""
        await self.database.ensure_schema()
        now = self.clock()
        expires_at = self._expires_at()
        task = task.model_copy(update={"version": 1, "updated_at": now})
        batches = [b.model_copy(update={"version": 1, "updated_at": now}) for b in batches]

        with storage_errors("create_task", task_id=task.id):
            async with self.database.session() as session:
                session.add(
                    GenerationTaskRecord(
                        id=task.id,
                        workflow_type=task.workflow_type,
                        status=task.status.value,
                        priority=task.priority,
                        version=1,
                        data=task.model_dump(mode="json"),
                        created_at=task.created_at,
                        updated_at=now,
                        expires_at=expires_at,
                    )
                )
                await session.flush()
                for batch in batches:
                    session.add(
                        GenerationBatchRecord(
                            batch_id=batch.batch_id,
                            task_id=task.id,
                            batch_index=batch.batch_index,
                            status=batch.status.value,
                            version=1,
                            data=batch.model_dump(mode="json"),
                            updated_at=now,
                            expires_at=expires_at,
                        )
                    )
                await session.commit()

        logger.info(
            "Generation task stored",
            task_id=task.id,
            workflow_type=task.workflow_type,
            batches=len(batches),
        )
        return task

    async def get(self, task_id: str) -> GenerationTask | None:
        await self.database.ensure_schema()
        with storage_errors("get_task", task_id=task_id):
            async with self.database.session() as session:
                record = await session.get(GenerationTaskRecord, task_id)
                if record is None:
                    return None
                return self._to_task(record)

    async def require(self, task_id: str) -> GenerationTask:
        task = await self.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found", details={"task_id": task_id})
        return task

    async def save(self, task: GenerationTask) -> GenerationTask:
        """
        Write ``task`` if the stored version still equals ``task.version``.

        Raises:
            StaleVersionError: another writer got there first
        """
        await self.database.ensure_schema()
        now = self.clock()
        stored = task.model_copy(update={"version": task.version + 1})

        with storage_errors("save_task", task_id=task.id):
            async with self.database.session() as session:
                result = await session.execute(
                    update(GenerationTaskRecord)
                    .where(
                        and_(
                            GenerationTaskRecord.id == task.id,
                            GenerationTaskRecord.version == task.version,
                        )
                    )
                    .values(
                        status=stored.status.value,
                        priority=stored.priority,
                        version=stored.version,
                        data=stored.model_dump(mode="json"),
                        updated_at=now,
                        expires_at=self._expires_at(),
                    )
                )
                await session.commit()

        if result.rowcount != 1:
            raise StaleVersionError(task.id, task.version)
        return stored

    async def update(
        self, task_id: str, mutate: TaskMutation
    ) -> tuple[GenerationTask, bool]:
        """
        Apply ``mutate`` to the current task and persist it.

        Returns the stored task and whether anything was written. A mutation returning its
        input unchanged is a no-op. Exceptions raised by ``mutate`` propagate.
        """
        for attempt in range(1, self.settings.task_cas_attempts + 1):
            current = await self.require(task_id)
            updated = mutate(current)
            if updated is current:
                return current, False
            try:
                return await self.save(updated), True
            except StaleVersionError:
                logger.debug(
                    "Task version conflict, reloading",
                    task_id=task_id,
                    version=current.version,
                    attempt=attempt,
                )

        raise StaleVersionError(task_id, current.version)

    async def get_batch(self, batch_id: str) -> Batch | None:
        await self.database.ensure_schema()
        with storage_errors("get_batch", batch_id=batch_id):
            async with self.database.session() as session:
                record = await session.get(GenerationBatchRecord, batch_id)
                if record is None:
                    return None
                return self._to_batch(record)

    async def list_batches(self, task_id: str) -> list[Batch]:
        await self.database.ensure_schema()
        with storage_errors("list_batches", task_id=task_id):
            async with self.database.session() as session:
                result = await session.execute(
                    select(GenerationBatchRecord)
                    .where(GenerationBatchRecord.task_id == task_id)
                    .order_by(GenerationBatchRecord.batch_index)
                )
                return [self._to_batch(record) for record in result.scalars().all()]

    async def save_batch(self, batch: Batch) -> Batch:
        await self.database.ensure_schema()
        now = self.clock()
        stored = batch.model_copy(update={"version": batch.version + 1, "updated_at": now})

        with storage_errors("save_batch", batch_id=batch.batch_id):
            async with self.database.session() as session:
                result = await session.execute(
                    update(GenerationBatchRecord)
                    .where(
                        and_(
                            GenerationBatchRecord.batch_id == batch.batch_id,
                            GenerationBatchRecord.version == batch.version,
                        )
                    )
                    .values(
                        status=stored.status.value,
                        version=stored.version,
                        data=stored.model_dump(mode="json"),
                        updated_at=now,
                        expires_at=self._expires_at(),
                    )
                )
                await session.commit()

        if result.rowcount != 1:
            raise StaleVersionError(batch.batch_id, batch.version)
        return stored

    async def update_batch(self, batch_id: str, mutate: BatchMutation) -> Batch:
        """Reload-and-reapply counterpart of ``update`` for batches."""
        for attempt in range(1, self.settings.task_cas_attempts + 1):
            current = await self.get_batch(batch_id)
            if current is None:
                raise NotFoundError(
                    f"Batch {batch_id} not found", details={"batch_id": batch_id}
                )
            updated = mutate(current)
            if updated is current:
                return current
            try:
                return await self.save_batch(updated)
            except StaleVersionError:
                logger.debug(
                    "Batch version conflict, reloading", batch_id=batch_id, attempt=attempt
                )

        raise StaleVersionError(batch_id, current.version)

    async def delete(self, task_id: str) -> bool:
        await self.database.ensure_schema()
        with storage_errors("delete_task", task_id=task_id):
            async with self.database.session() as session:
                await session.execute(
                    delete(GenerationBatchRecord).where(
                        GenerationBatchRecord.task_id == task_id
                    )
                )
                result = await session.execute(
                    delete(GenerationTaskRecord).where(GenerationTaskRecord.id == task_id)
                )
                await session.commit()
                return result.rowcount > 0

    async def list_tasks(
        self,
        status: list[TaskStatus] | None = None,
        workflow_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[GenerationTask], int]:
        """Newest first, with the total count before pagination."""
        await self.database.ensure_schema()
        query = select(GenerationTaskRecord)
        if status:
            query = query.where(GenerationTaskRecord.status.in_([s.value for s in status]))
        if workflow_type:
            query = query.where(GenerationTaskRecord.workflow_type == workflow_type)

        with storage_errors("list_tasks"):
            async with self.database.session() as session:
                total = await session.scalar(
                    select(func.count()).select_from(query.subquery())
                )
                result = await session.execute(
                    query.order_by(GenerationTaskRecord.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
                tasks = [self._to_task(record) for record in result.scalars().all()]
        return tasks, total or 0

    async def list_ids(self, status: list[TaskStatus]) -> list[str]:
        await self.database.ensure_schema()
        with storage_errors("list_task_ids"):
            async with self.database.session() as session:
                result = await session.execute(
                    select(GenerationTaskRecord.id).where(
                        GenerationTaskRecord.status.in_([s.value for s in status])
                    )
                )
                return list(result.scalars().all())

    async def cleanup_expired(self) -> int:
        """Delete tasks and batches whose TTL ran out."""
        await self.database.ensure_schema()
        now = self.clock()
        with storage_errors("cleanup_expired_tasks"):
            async with self.database.session() as session:
                expired_ids = select(GenerationTaskRecord.id).where(
                    GenerationTaskRecord.expires_at <= now
                )
                await session.execute(
                    delete(GenerationBatchRecord)
                    .where(
                        (GenerationBatchRecord.task_id.in_(expired_ids))
                        | (GenerationBatchRecord.expires_at <= now)
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(
                    delete(GenerationTaskRecord).where(
                        GenerationTaskRecord.expires_at <= now
                    )
                )
                await session.commit()
                removed = result.rowcount or 0

        if removed:
            logger.info("Expired generation tasks removed", count=removed)
        return removed

    @staticmethod
    def _to_task(record: GenerationTaskRecord) -> GenerationTask:
        task = GenerationTask.model_validate(record.data)
        task.version = record.version
        return task

    @staticmethod
    def _to_batch(record: GenerationBatchRecord) -> Batch:
        batch = Batch.model_validate(record.data)
        batch.version = record.version
        return batch

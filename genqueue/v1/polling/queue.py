"""
Completion polling for generation tasks.

Each task registers the flattened item ids of all its batches once. A periodic run asks the
``CompletionPoller`` about the most urgent entries and drops those reported finished.
"""

from datetime import timedelta
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, Field
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from genqueue.config.logging import get_logger
from genqueue.config.settings import Settings
from genqueue.infra.clock import Clock, utcnow
from genqueue.infra.database import Database, storage_errors
from genqueue.infra.locks import DistributedLock
from genqueue.v1.core.registries import CompletionPoller, PeriodicTriggerHost
from genqueue.v1.polling.models import PollingEntry, PollingStatus

logger = get_logger(__name__)

POLLING_LOCK_KEY = "polling_queue_processing"
POLLING_TRIGGER_ID = "process_polling_queue"

MIN_PRIORITY = 1
MAX_PRIORITY = 10

# Failed entries are dropped after an hour, anything after a day
FAILED_ENTRY_TTL = timedelta(hours=1)
ENTRY_TTL = timedelta(hours=24)


class PollingRunResult(BaseModel):
    skipped: bool = False
    polled: int = 0
    completed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    removed_stale: int = 0


class PollingQueue:
    def __init__(
        self,
        database: Database,
        lock: DistributedLock,
        settings: Settings,
        clock: Clock = utcnow,
        poller: CompletionPoller | None = None,
    ):
        self.database = database
        self.lock = lock
        self.settings = settings
        self.clock = clock
        self.poller = poller

    def set_poller(self, poller: CompletionPoller) -> None:
        self.poller = poller

    async def add_to_queue(
        self,
        generation_id: str,
        workflow_type: str,
        item_ids: list[str],
        priority: int = 5,
    ) -> bool:
        """Register a generation for polling. Registering it again changes nothing."""
        priority = max(MIN_PRIORITY, min(MAX_PRIORITY, priority))
        await self.database.ensure_schema()

        with storage_errors("polling_add", generation_id=generation_id):
            async with self.database.session() as session:
                if await session.get(PollingEntry, generation_id) is not None:
                    return True
                session.add(
                    PollingEntry(
                        generation_id=generation_id,
                        workflow_type=workflow_type,
                        item_ids=list(dict.fromkeys(item_ids)),
                        priority=priority,
                        attempts=0,
                        status=PollingStatus.PENDING.value,
                        added_at=self.clock(),
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    # Registered concurrently
                    await session.rollback()
                    return True

        logger.info(
            "Generation added to polling queue",
            generation_id=generation_id,
            workflow_type=workflow_type,
            item_count=len(item_ids),
            priority=priority,
        )
        return True

    async def mark_generation_complete(self, generation_id: str) -> bool:
        """Remove a generation from the queue. Returns whether it was queued."""
        await self.database.ensure_schema()
        with storage_errors("polling_complete", generation_id=generation_id):
            async with self.database.session() as session:
                result = await session.execute(
                    delete(PollingEntry).where(PollingEntry.generation_id == generation_id)
                )
                await session.commit()
                removed = result.rowcount > 0

        if removed:
            logger.info("Generation removed from polling queue", generation_id=generation_id)
        return removed

    async def get_entry(self, generation_id: str) -> PollingEntry | None:
        await self.database.ensure_schema()
        with storage_errors("polling_get", generation_id=generation_id):
            async with self.database.session() as session:
                return await session.get(PollingEntry, generation_id)

    async def process_queue(self) -> PollingRunResult:
        """Poll up to ``polling_batch_size`` due entries under the polling lock."""
        token = self.lock.new_token()
        if not await self.lock.acquire(POLLING_LOCK_KEY, token, self.settings.lock_ttl_s):
            return PollingRunResult(skipped=True)

        try:
            result = PollingRunResult(removed_stale=await self.cleanup_stale())
            if self.poller is None:
                logger.warning("Polling queue has no completion poller")
                return result

            now = self.clock()
            poll_gap = timedelta(seconds=self.settings.polling_interval_s)
            for entry in await self._ordered_entries():
                if result.polled >= self.settings.polling_batch_size:
                    break
                if entry.last_poll_at and now - entry.last_poll_at < poll_gap:
                    continue

                if entry.attempts >= self.settings.polling_max_attempts:
                    await self._set_status(
                        entry.generation_id,
                        PollingStatus.FAILED,
                        last_error=f"Gave up after {entry.attempts} polls",
                    )
                    result.failed.append(entry.generation_id)
                    logger.warning(
                        "Polling gave up on generation",
                        generation_id=entry.generation_id,
                        attempts=entry.attempts,
                    )
                    continue

                result.polled += 1
                if await self._poll_entry(entry):
                    result.completed.append(entry.generation_id)

            return result
        finally:
            await self.lock.release(POLLING_LOCK_KEY, token)

    async def _ordered_entries(self) -> list[PollingEntry]:
        await self.database.ensure_schema()
        with storage_errors("polling_list"):
            async with self.database.session() as session:
                result = await session.execute(
                    select(PollingEntry)
                    .where(PollingEntry.status != PollingStatus.FAILED.value)
                    .order_by(PollingEntry.priority, PollingEntry.added_at)
                )
                return list(result.scalars().all())

    async def _poll_entry(self, entry: PollingEntry) -> bool:
        attempt = entry.attempts + 1
        await self._set_status(
            entry.generation_id,
            PollingStatus.POLLING,
            attempts=attempt,
            last_poll_at=self.clock(),
        )

        try:
            finished = await self.poller.poll(
                entry.generation_id, entry.workflow_type, list(entry.item_ids), attempt
            )
        except Exception as e:
            logger.warning(
                "Completion poll failed",
                generation_id=entry.generation_id,
                attempt=attempt,
                error=str(e),
            )
            await self._set_status(
                entry.generation_id, PollingStatus.PENDING, last_error=str(e)[:500]
            )
            return False

        if finished:
            await self.mark_generation_complete(entry.generation_id)
            return True

        await self._set_status(entry.generation_id, PollingStatus.PENDING)
        return False

    async def _set_status(
        self, generation_id: str, status: PollingStatus, **values: Any
    ) -> None:
        with storage_errors("polling_update", generation_id=generation_id):
            async with self.database.session() as session:
                await session.execute(
                    update(PollingEntry)
                    .where(PollingEntry.generation_id == generation_id)
                    .values(status=status.value, **values)
                )
                await session.commit()

    async def cleanup_stale(self) -> int:
        """Drop failed entries after an hour and any entry after a day."""
        await self.database.ensure_schema()
        now = self.clock()
        with storage_errors("polling_cleanup"):
            async with self.database.session() as session:
                result = await session.execute(
                    delete(PollingEntry).where(
                        or_(
                            and_(
                                PollingEntry.status == PollingStatus.FAILED.value,
                                func.coalesce(
                                    PollingEntry.last_poll_at, PollingEntry.added_at
                                )
                                < now - FAILED_ENTRY_TTL,
                            ),
                            PollingEntry.added_at < now - ENTRY_TTL,
                        )
                    ).execution_options(synchronize_session=False)
                )
                await session.commit()
                removed = result.rowcount or 0

        if removed:
            logger.info("Stale polling entries removed", count=removed)
        return removed

    async def get_queue_status(self) -> dict[str, Any]:
        await self.database.ensure_schema()
        with storage_errors("polling_status"):
            async with self.database.session() as session:
                counts = await session.execute(
                    select(PollingEntry.status, func.count()).group_by(PollingEntry.status)
                )
                by_status = {status: count for status, count in counts.all()}
                oldest = await session.scalar(select(func.min(PollingEntry.added_at)))

        entries = await self._ordered_entries()
        return {
            "total": sum(by_status.values()),
            "by_status": {s.value: by_status.get(s.value, 0) for s in PollingStatus},
            "oldest_added_at": oldest.isoformat() if oldest else None,
            "next": [entry.to_dict() for entry in entries[: self.settings.polling_batch_size]],
        }

    async def clear_queue(self) -> int:
        await self.database.ensure_schema()
        with storage_errors("polling_clear"):
            async with self.database.session() as session:
                result = await session.execute(delete(PollingEntry))
                await session.commit()
                cleared = result.rowcount or 0

        logger.info("Polling queue cleared", count=cleared)
        return cleared

    def register_triggers(self, host: PeriodicTriggerHost) -> None:
        host.add_job(
            self.process_queue,
            trigger=IntervalTrigger(seconds=self.settings.polling_interval_s),
            id=POLLING_TRIGGER_ID,
            name="Poll generation completion",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

"""
Tick-driven entry point of the job queue.

Each tick takes the ``job_processing`` lock, runs at most ``max_concurrent_jobs`` ready jobs
one after another, and releases the lock with the token it acquired. The lease is renewed
for ``lock_ttl_s`` before every job and a tick whose lease was lost stops dispatching. A
tick that finds the lock held does nothing: another tick is in flight.
"""

from typing import Any

from apscheduler.triggers.interval import IntervalTrigger

from genqueue.config.logging import get_logger
from genqueue.config.settings import Settings
from genqueue.infra.locks import DistributedLock
from genqueue.v1.core.registries import PeriodicTriggerHost
from genqueue.v1.jobs.handlers import HandlerRegistry
from genqueue.v1.jobs.schemas import TickResult
from genqueue.v1.jobs.store import JobStore

logger = get_logger(__name__)

PROCESSING_LOCK_KEY = "job_processing"
PROCESS_TRIGGER_ID = "process_background_jobs"
CLEANUP_TRIGGER_ID = "cleanup_completed_jobs"


class BackgroundScheduler:
    """Owns the job store, the handler registry and the tick lock."""

    def __init__(
        self,
        store: JobStore,
        handlers: HandlerRegistry,
        lock: DistributedLock,
        settings: Settings,
    ):
        self.store = store
        self.handlers = handlers
        self.lock = lock
        self.settings = settings
        self._initialized = False

    def init(self, host: PeriodicTriggerHost | None = None) -> None:
        """
        Register the periodic triggers with ``host`` and seed the default handlers.

        ``host`` is an APScheduler scheduler or anything exposing the same ``add_job``.
        Safe to call more than once.
        """
        if not self._initialized:
            self.handlers.register_default_handlers()
            self._initialized = True

        if host is None:
            return

        host.add_job(
            self.process_jobs,
            trigger=IntervalTrigger(seconds=self.settings.process_interval_s),
            id=PROCESS_TRIGGER_ID,
            name="Process background jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        host.add_job(
            self.cleanup_completed_jobs,
            trigger=IntervalTrigger(seconds=self.settings.cleanup_interval_s),
            id=CLEANUP_TRIGGER_ID,
            name="Clean up finished jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            "Scheduler triggers registered",
            process_interval_s=self.settings.process_interval_s,
            cleanup_interval_s=self.settings.cleanup_interval_s,
        )

    async def process_jobs(self) -> TickResult:
        """Run one tick."""
        token = self.lock.new_token()
        acquired = await self.lock.acquire(
            PROCESSING_LOCK_KEY, token, self.settings.lock_ttl_s
        )
        if not acquired:
            logger.debug("Tick skipped, lock held elsewhere")
            return TickResult(skipped=True)

        try:
            jobs = await self.store.get_ready_jobs(self.settings.max_concurrent_jobs)
            result = TickResult()
            for position, job in enumerate(jobs):
                if not await self.lock.extend(
                    PROCESSING_LOCK_KEY, token, self.settings.lock_ttl_s
                ):
                    logger.warning(
                        "Tick lock lost, ending tick early",
                        processed=result.processed,
                        remaining=len(jobs) - position,
                    )
                    result.lock_lost = True
                    break
                outcome = await self.handlers.process_job(job)
                result.outcomes.append(outcome)
                result.processed += 1

            if result.processed:
                logger.info(
                    "Tick finished",
                    processed=result.processed,
                    statuses=[o.status.value if o.status else None for o in result.outcomes],
                )
            return result
        finally:
            await self.lock.release(PROCESSING_LOCK_KEY, token)

    async def update_progress(
        self, job_id: str, percent: float, message: str | None = None
    ) -> bool:
        """Persist handler progress immediately."""
        return await self.store.update_progress(job_id, percent, message)

    async def queue_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        delay: float = 0,
        max_attempts: int | None = None,
    ) -> str:
        return await self.store.queue_job(
            job_type, payload, priority=priority, delay=delay, max_attempts=max_attempts
        )

    async def cancel_job(self, job_id: str) -> bool:
        return await self.store.cancel_job(job_id)

    async def get_job_status(self, job_id: str) -> dict[str, Any] | None:
        return await self.store.get_job_status(job_id)

    async def get_statistics(self, window_hours: int | None = None) -> dict[str, Any]:
        stats = await self.store.get_statistics(window_hours)
        stats["registered_handlers"] = sorted(self.handlers.registered_types())
        stats["lock_held"] = await self.lock.is_locked(PROCESSING_LOCK_KEY)
        stats["timers"] = self.handlers.monitor.get_all_metrics()
        return stats

    def register_handler(self, job_type: str, handler: Any) -> None:
        self.handlers.register_handler(job_type, handler)

    async def cleanup_completed_jobs(self, retention_hours: int | None = None) -> int:
        deleted = await self.store.cleanup_completed_jobs(retention_hours)
        await self.lock.cleanup_expired()
        return deleted

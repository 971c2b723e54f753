"""
Durable storage for background job rows.

Every write is a single conditional UPDATE gated on the row's current status, so a job
that was cancelled (or finished) while its handler was still running is never resurrected
by a late write.
"""

import hashlib
import json
import random
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, select, update

from genqueue.config.logging import get_logger
from genqueue.config.settings import Settings
from genqueue.infra.clock import Clock, utcnow
from genqueue.infra.database import Database, storage_errors
from genqueue.v1.core.exceptions import ValidationError
from genqueue.v1.jobs.models import (
    ACTIVE_STATUSES,
    FINISHED_STATUSES,
    READY_STATUSES,
    Job,
    JobStatus,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class FailureRecord:
    """Result of recording one failed attempt."""

    status: JobStatus
    attempts: int
    next_run_at: datetime | None


class JobStore:
    """Persistent priority queue of background jobs."""

    def __init__(
        self,
        database: Database,
        settings: Settings,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ):
        self.database = database
        self.settings = settings
        self.clock = clock
        self.rng = rng or random.Random()

    async def queue_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        delay: float = 0,
        max_attempts: int | None = None,
    ) -> str:
        """
        Insert a job and return its id.

        Args:
            job_type: Handler type tag
            payload: JSON-serialisable job parameters
            priority: Lower runs first, defaults to ``default_job_priority``
            delay: Seconds until the job becomes ready
            max_attempts: Attempt limit, defaults to ``job_max_attempts``

        Returns:
            The new job id, or the id of an identical job still active inside the
            duplicate window
        """
        if not job_type:
            raise ValidationError("Job type is required")
        if delay < 0:
            raise ValidationError("Delay cannot be negative", details={"delay": delay})

        payload = payload or {}
        priority = self.settings.default_job_priority if priority is None else priority
        max_attempts = max_attempts or self.settings.job_max_attempts
        dedupe_key = self.generate_dedupe_key(job_type, payload)
        now = self.clock()

        await self.database.ensure_schema()

        with storage_errors("queue_job", job_type=job_type):
            async with self.database.session() as session:
                if self.settings.job_dedupe_window_s > 0:
                    window_start = now - timedelta(seconds=self.settings.job_dedupe_window_s)
                    existing = await session.scalar(
                        select(Job.id)
                        .where(
                            and_(
                                Job.dedupe_key == dedupe_key,
                                Job.status.in_(ACTIVE_STATUSES),
                                Job.created_at >= window_start,
                            )
                        )
                        .limit(1)
                    )
                    if existing:
                        logger.info(
                            "Job deduplicated",
                            job_id=existing,
                            job_type=job_type,
                            dedupe_key=dedupe_key,
                        )
                        return existing

                job = Job(
                    id=str(uuid.uuid4()),
                    type=job_type,
                    payload=payload,
                    priority=priority,
                    status=JobStatus.QUEUED.value,
                    attempts=0,
                    max_attempts=max_attempts,
                    scheduled_at=now + timedelta(seconds=delay),
                    progress=0,
                    dedupe_key=dedupe_key,
                    created_at=now,
                    updated_at=now,
                )
                session.add(job)
                await session.commit()

        logger.info(
            "Job queued",
            job_id=job.id,
            job_type=job_type,
            priority=priority,
            delay=delay,
        )
        return job.id

    async def get_ready_jobs(self, limit: int) -> list[Job]:
        """Ready jobs ordered by (priority, scheduled_at)."""
        await self.database.ensure_schema()
        now = self.clock()
        with storage_errors("get_ready_jobs"):
            async with self.database.session() as session:
                result = await session.execute(
                    select(Job)
                    .where(and_(Job.status.in_(READY_STATUSES), Job.scheduled_at <= now))
                    .order_by(Job.priority, Job.scheduled_at, Job.created_at)
                    .limit(limit)
                )
                return list(result.scalars().all())

    async def get_job(self, job_id: str) -> Job | None:
        await self.database.ensure_schema()
        with storage_errors("get_job", job_id=job_id):
            async with self.database.session() as session:
                return await session.get(Job, job_id)

    async def get_job_status(self, job_id: str) -> dict[str, Any] | None:
        """Status snapshot for display, or None when the job does not exist."""
        job = await self.get_job(job_id)
        return job.to_status_dict() if job else None

    async def list_jobs(
        self,
        status: list[str] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """Newest first, with the total count before pagination."""
        await self.database.ensure_schema()
        query = select(Job)
        if status:
            query = query.where(Job.status.in_(status))
        if job_type:
            query = query.where(Job.type == job_type)

        with storage_errors("list_jobs"):
            async with self.database.session() as session:
                total = await session.scalar(
                    select(func.count()).select_from(query.subquery())
                )
                result = await session.execute(
                    query.order_by(Job.created_at.desc()).offset(offset).limit(limit)
                )
                return list(result.scalars().all()), total or 0

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a job.

        Returns True when the job is cancelled after the call (including when it already
        was), False when it does not exist or already finished.
        """
        await self.database.ensure_schema()
        now = self.clock()
        with storage_errors("cancel_job", job_id=job_id):
            async with self.database.session() as session:
                result = await session.execute(
                    update(Job)
                    .where(and_(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES)))
                    .values(
                        status=JobStatus.CANCELLED.value,
                        finished_at=now,
                        updated_at=now,
                    )
                )
                await session.commit()
                if result.rowcount > 0:
                    logger.info("Job cancelled", job_id=job_id)
                    return True

                current = await session.scalar(select(Job.status).where(Job.id == job_id))
                return current == JobStatus.CANCELLED.value

    async def update_progress(
        self, job_id: str, percent: float, message: str | None = None
    ) -> bool:
        """Persist progress immediately. Ignored once the job left the active states."""
        percent = int(max(0, min(100, round(percent))))
        values: dict[str, Any] = {"progress": percent, "updated_at": self.clock()}
        if message is not None:
            values["message"] = message

        await self.database.ensure_schema()
        with storage_errors("update_progress", job_id=job_id):
            async with self.database.session() as session:
                result = await session.execute(
                    update(Job)
                    .where(and_(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES)))
                    .values(**values)
                )
                await session.commit()
                return result.rowcount > 0

    async def mark_processing(self, job_id: str) -> bool:
        """Claim a ready job. False if it was cancelled or claimed meanwhile."""
        now = self.clock()
        return await self._conditional_update(
            "mark_processing",
            job_id,
            READY_STATUSES,
            status=JobStatus.PROCESSING.value,
            progress=0,
            started_at=now,
            updated_at=now,
        )

    async def mark_completed(
        self, job_id: str, result: dict[str, Any] | None = None
    ) -> bool:
        now = self.clock()
        return await self._conditional_update(
            "mark_completed",
            job_id,
            ACTIVE_STATUSES,
            status=JobStatus.COMPLETED.value,
            progress=100,
            result=result,
            finished_at=now,
            updated_at=now,
        )

    async def record_failure(self, job_id: str, error: str) -> FailureRecord | None:
        """
        Count one failed attempt and branch on the attempt limit.

        Below ``max_attempts`` the job goes to ``retrying`` with a backoff delay; the attempt
        that reaches the limit marks it ``failed``. Returns None if the job was no longer
        active (cancelled or removed while the handler ran).
        """
        await self.database.ensure_schema()
        now = self.clock()
        with storage_errors("record_failure", job_id=job_id):
            async with self.database.session() as session:
                job = await session.get(Job, job_id)
                if job is None or not job.is_active():
                    return None

                attempts = min(job.attempts + 1, job.max_attempts)
                values: dict[str, Any] = {
                    "attempts": attempts,
                    "last_error": error,
                    "message": error,
                    "updated_at": now,
                }
                if attempts < job.max_attempts:
                    next_run_at = now + timedelta(seconds=self.calculate_backoff(attempts))
                    status = JobStatus.RETRYING
                    values.update(status=status.value, scheduled_at=next_run_at)
                else:
                    next_run_at = None
                    status = JobStatus.FAILED
                    values.update(status=status.value, finished_at=now)

                result = await session.execute(
                    update(Job)
                    .where(
                        and_(
                            Job.id == job_id,
                            Job.status.in_(ACTIVE_STATUSES),
                            Job.attempts == job.attempts,
                        )
                    )
                    .values(**values)
                )
                await session.commit()
                if result.rowcount == 0:
                    return None

        return FailureRecord(status=status, attempts=attempts, next_run_at=next_run_at)

    def calculate_backoff(self, attempts: int) -> float:
        """Seconds before the next attempt, exponential with proportional jitter."""
        base_delay = self.settings.job_backoff_base_s
        max_delay = self.settings.job_max_backoff_s

        # attempts counts failures so far, so the first retry waits the base delay
        delay = min(max_delay, base_delay * (2 ** (attempts - 1)))

        jitter = delay * self.settings.job_backoff_jitter * (2 * self.rng.random() - 1)
        return max(1.0, delay + jitter)

    async def recover_stuck_jobs(
        self, on_failed: Callable[[Job, str], Awaitable[None]] | None = None
    ) -> int:
        """
        Fail or retry ``processing`` rows left behind by a crashed tick.

        A row counts as stuck once it has not been touched for longer than a handler may
        run plus the tick lock lifetime. ``on_failed(job, error)`` is awaited for each row
        that used up its last attempt.
        """
        await self.database.ensure_schema()
        timeout_seconds = self.settings.job_timeout_s + self.settings.lock_ttl_s
        cutoff = self.clock() - timedelta(seconds=timeout_seconds)

        with storage_errors("find_stuck_jobs"):
            async with self.database.session() as session:
                result = await session.execute(
                    select(Job).where(
                        and_(
                            Job.status == JobStatus.PROCESSING.value,
                            Job.updated_at < cutoff,
                        )
                    )
                )
                stuck = list(result.scalars().all())

        message = f"Job abandoned after {timeout_seconds:g}s without progress"
        recovered = 0
        for job in stuck:
            record = await self.record_failure(job.id, message)
            if record is None:
                continue
            recovered += 1
            if record.status == JobStatus.FAILED and on_failed is not None:
                await on_failed(job, message)

        if recovered:
            logger.warning(
                "Recovered stuck jobs",
                stuck_job_count=recovered,
                timeout_seconds=timeout_seconds,
            )
        return recovered

    async def cleanup_completed_jobs(self, retention_hours: int | None = None) -> int:
        """Delete finished jobs older than the retention window."""
        if retention_hours is None:
            retention_hours = self.settings.job_retention_hours
        cutoff = self.clock() - timedelta(hours=retention_hours)

        await self.database.ensure_schema()
        with storage_errors("cleanup_completed_jobs"):
            async with self.database.session() as session:
                result = await session.execute(
                    delete(Job).where(
                        and_(Job.status.in_(FINISHED_STATUSES), Job.updated_at < cutoff)
                    )
                )
                await session.commit()
                deleted_count = result.rowcount or 0

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                deleted_count=deleted_count,
                retention_hours=retention_hours,
            )
        return deleted_count

    async def get_statistics(self, window_hours: int | None = None) -> dict[str, Any]:
        """Counts per status and per type for jobs created inside the trailing window."""
        if window_hours is None:
            window_hours = self.settings.stats_window_hours
        window_start = self.clock() - timedelta(hours=window_hours)
        in_window = Job.created_at >= window_start

        await self.database.ensure_schema()
        with storage_errors("get_statistics"):
            async with self.database.session() as session:
                status_result = await session.execute(
                    select(Job.status, func.count(Job.id))
                    .where(in_window)
                    .group_by(Job.status)
                )
                by_status = {status: count for status, count in status_result.all()}

                type_result = await session.execute(
                    select(Job.type, func.count(Job.id)).where(in_window).group_by(Job.type)
                )
                by_type = {job_type: count for job_type, count in type_result.all()}

                queue_depth = await session.scalar(
                    select(func.count(Job.id)).where(Job.status.in_(READY_STATUSES))
                )
                processing = await session.scalar(
                    select(func.count(Job.id)).where(
                        Job.status == JobStatus.PROCESSING.value
                    )
                )

        return {
            "window_hours": window_hours,
            "total_jobs": sum(by_status.values()),
            "by_status": {status.value: by_status.get(status.value, 0) for status in JobStatus},
            "by_type": by_type,
            "queue_depth": queue_depth or 0,
            "processing": processing or 0,
        }

    @staticmethod
    def generate_dedupe_key(job_type: str, payload: dict[str, Any]) -> str:
        """Deterministic hash of the job type and payload."""
        key_data = f"{job_type}:{json.dumps(payload, sort_keys=True, default=str)}"
        return hashlib.sha256(key_data.encode()).hexdigest()

    async def _conditional_update(
        self, operation: str, job_id: str, allowed: tuple[str, ...], **values: Any
    ) -> bool:
        await self.database.ensure_schema()
        with storage_errors(operation, job_id=job_id):
            async with self.database.session() as session:
                result = await session.execute(
                    update(Job)
                    .where(and_(Job.id == job_id, Job.status.in_(allowed)))
                    .values(**values)
                )
                await session.commit()
                return result.rowcount > 0

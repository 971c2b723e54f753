from datetime import UTC, datetime, timedelta

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select, text

from genqueue.runtime import Runtime, RuntimeDep
from genqueue.v1.core.exceptions import create_success_response
from genqueue.v1.jobs.models import READY_STATUSES, Job, JobStatus
from genqueue.v1.jobs.scheduler import PROCESSING_LOCK_KEY

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue health status."""

    queue_depth: int = 0
    processing: int = 0
    stuck_jobs_count: int = 0
    tick_lock_held: bool = False
    registered_handlers: list[str] = []


class HealthResponse(BaseModel):
    """Health response with database and queue status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    queue: QueueHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(runtime: Runtime = RuntimeDep):
    """Health check endpoint with database and queue status."""
    settings = runtime.settings
    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(runtime)
    queue_health = None
    if db_health.connected:
        queue_health = await _check_queue_health(runtime)

    health = HealthResponse(
        ok=db_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        queue=queue_health,
    )
    return create_success_response(data=health.model_dump())


async def _check_database_health(runtime: Runtime) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        # Simple query to test database connectivity
        async with runtime.database.session() as session:
            await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(runtime: Runtime) -> QueueHealth:
    """Queue depth, in-flight jobs and rows that look abandoned."""
    settings = runtime.settings
    await runtime.database.ensure_schema()

    # Count stuck jobs (processing rows untouched for longer than a tick may hold them)
    stuck_cutoff = runtime.clock() - timedelta(
        seconds=settings.job_timeout_s + settings.lock_ttl_s
    )

    async with runtime.database.session() as session:
        queue_depth = await session.scalar(
            select(func.count(Job.id)).where(Job.status.in_(READY_STATUSES))
        )
        processing = await session.scalar(
            select(func.count(Job.id)).where(Job.status == JobStatus.PROCESSING.value)
        )
        stuck_jobs_count = await session.scalar(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.PROCESSING.value, Job.updated_at < stuck_cutoff
            )
        )

    return QueueHealth(
        queue_depth=queue_depth or 0,
        processing=processing or 0,
        stuck_jobs_count=stuck_jobs_count or 0,
        tick_lock_held=await runtime.lock.is_locked(PROCESSING_LOCK_KEY),
        registered_handlers=sorted(runtime.handlers.registered_types()),
    )

"""
Handler dispatch with timeout, retry and terminal-failure semantics.

A handler is either a callable taking a ``JobContext`` or an object with a
``handle(context)`` method. Coroutine handlers run on the event loop and are cancelled
when they overrun; plain functions run in a worker thread and are abandoned on timeout.
Whatever the handler does, its exceptions stop at ``process_job``: they become a
``retrying`` or ``failed`` status plus a log line, never an error for the scheduler.
Handler objects may also define ``on_failed(context, error)``, awaited once when the last
attempt fails.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from genqueue.config.logging import bind_job_context, clear_job_context, get_logger
from genqueue.config.settings import Settings
from genqueue.infra.monitoring import PerformanceMonitor
from genqueue.v1.core.exceptions import HandlerNotFoundError, JobTimeoutError, StorageError
from genqueue.v1.core.registries import JobHandler, JobRegistry
from genqueue.v1.jobs.models import Job, JobStatus
from genqueue.v1.jobs.schemas import JobOutcome
from genqueue.v1.jobs.store import JobStore

logger = get_logger(__name__)

ProgressHook = Callable[[str, float, str | None], Awaitable[bool]]
Handler = JobHandler | Callable[..., Any]


class JobContext:
    """What a handler sees of the job it is running."""

    def __init__(
        self,
        job_id: str,
        job_type: str,
        payload: dict[str, Any],
        attempt: int,
        progress_hook: ProgressHook,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        self.job_id = job_id
        self.job_type = job_type
        self.payload = payload
        self.attempt = attempt
        self._progress_hook = progress_hook
        self._loop = loop

    async def update_progress(self, percent: float, message: str | None = None) -> bool:
        """Persist progress for this job right away."""
        return await self._progress_hook(self.job_id, percent, message)

    def update_progress_sync(
        self, percent: float, message: str | None = None, timeout: float = 30
    ) -> bool:
        """Progress hook for handlers running in a worker thread."""
        if self._loop is None:
            raise RuntimeError("No event loop bound to this job context")
        future = asyncio.run_coroutine_threadsafe(
            self.update_progress(percent, message), self._loop
        )
        return future.result(timeout)


class HandlerRegistry:
    """Maps job types to handlers and runs one job at a time through them."""

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        monitor: PerformanceMonitor | None = None,
        registry: JobRegistry | None = None,
        defaults: Mapping[str, Any] | None = None,
    ):
        self.store = store
        self.settings = settings
        self.monitor = monitor or PerformanceMonitor(settings.slow_operation_threshold_s)
        self.registry = registry or JobRegistry()
        self._defaults = dict(defaults or {})
        self._defaults_registered = False

    def register_handler(self, job_type: str, handler: Handler) -> None:
        """Register ``handler`` for ``job_type``. The last registration wins."""
        if not (callable(handler) or callable(getattr(handler, "handle", None))):
            raise TypeError(
                f"Handler for '{job_type}' must be callable or define handle(context)"
            )
        if self.registry.has(job_type):
            logger.info("Replacing job handler", job_type=job_type)
        self.registry.register(job_type, handler)

    def register_default_handlers(self) -> list[str]:
        """Seed the built-in handlers once. Handlers registered earlier for the same type win."""
        if self._defaults_registered:
            return []

        registered = []
        for job_type, handler in self._defaults.items():
            if self.registry.has(job_type):
                continue
            self.register_handler(job_type, handler)
            registered.append(job_type)
        self._defaults_registered = True

        logger.info("Default job handlers registered", registered_handlers=registered)
        return registered

    def get_handler(self, job_type: str) -> Handler:
        try:
            return self.registry.get(job_type)
        except KeyError:
            raise HandlerNotFoundError(job_type) from None

    def registered_types(self) -> list[str]:
        return self.registry.list()

    async def process_job(self, job: Job) -> JobOutcome:
        """
        Run one job through its handler and persist the outcome.

        Storage errors from the job store propagate; everything raised by or about the
        handler is turned into a retry or a terminal failure.
        """
        timer = f"background_job_{job.type}"
        self.monitor.start_timer(timer)
        bind_job_context(job_id=job.id, job_type=job.type)
        try:
            outcome = await self._run(job)
        finally:
            elapsed = self.monitor.stop_timer(timer)
            clear_job_context("job_id", "job_type")

        outcome.elapsed_s = elapsed
        return outcome

    async def _run(self, job: Job) -> JobOutcome:
        try:
            handler = self.get_handler(job.type)
        except HandlerNotFoundError as e:
            return await self._handle_failure(job, e)

        if not await self.store.mark_processing(job.id):
            logger.info("Job no longer ready, skipping", status=job.status)
            return JobOutcome(job_id=job.id, job_type=job.type, attempts=job.attempts)

        logger.info("Processing job started", attempt=job.attempts + 1)
        context = JobContext(
            job_id=job.id,
            job_type=job.type,
            payload=dict(job.payload or {}),
            attempt=job.attempts + 1,
            progress_hook=self.store.update_progress,
            loop=asyncio.get_running_loop(),
        )

        try:
            result = await self.execute_with_timeout(
                handler, context, self.settings.job_timeout_s
            )
        except Exception as e:
            return await self._handle_failure(job, e, handler, context)

        written = await self.store.mark_completed(job.id, _normalise_result(result))
        if not written:
            # Cancelled while the handler ran; the late result is dropped
            logger.info("Job finished after leaving the active states, result ignored")
            return JobOutcome(job_id=job.id, job_type=job.type, attempts=job.attempts)

        logger.info("Processing job completed successfully")
        return JobOutcome(
            job_id=job.id,
            job_type=job.type,
            status=JobStatus.COMPLETED,
            attempts=job.attempts,
        )

    async def _handle_failure(
        self,
        job: Job,
        error: Exception,
        handler: Handler | None = None,
        context: JobContext | None = None,
    ) -> JobOutcome:
        message = str(error) or error.__class__.__name__
        record = await self.store.record_failure(job.id, message)

        if record is None:
            logger.info("Job failed after leaving the active states", error=message)
            return JobOutcome(
                job_id=job.id, job_type=job.type, attempts=job.attempts, error=message
            )

        log = logger.warning if record.status == JobStatus.RETRYING else logger.error
        log(
            "Job processing failed",
            error=message,
            error_type=error.__class__.__name__,
            attempts=record.attempts,
            max_attempts=job.max_attempts,
            status=record.status.value,
            next_run_at=record.next_run_at.isoformat() if record.next_run_at else None,
            exc_info=not isinstance(error, HandlerNotFoundError | JobTimeoutError),
        )
        if record.status == JobStatus.FAILED and context is not None:
            await run_failure_hook(handler, context, message)

        return JobOutcome(
            job_id=job.id,
            job_type=job.type,
            status=record.status,
            attempts=record.attempts,
            error=message,
            next_run_at=record.next_run_at,
        )

    async def execute_with_timeout(
        self, handler: Any, context: JobContext, seconds: float
    ) -> Any:
        """
        Invoke ``handler`` bounded by ``seconds`` of wall-clock time.

        Raises:
            JobTimeoutError: the handler did not return in time
        """
        fn = handler.handle if callable(getattr(handler, "handle", None)) else handler
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds

        try:
            if inspect.iscoroutinefunction(fn):
                return await asyncio.wait_for(fn(context), timeout=seconds)

            # The worker thread keeps running after a timeout; its result is never used
            result = await asyncio.wait_for(asyncio.to_thread(fn, context), timeout=seconds)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(
                    result, timeout=max(0.0, deadline - loop.time())
                )
            return result
        except TimeoutError:
            raise JobTimeoutError(context.job_id, seconds) from None


async def run_failure_hook(handler: Handler, context: JobContext, error: str) -> None:
    """Await the handler's ``on_failed(context, error)`` once its job has given up."""
    on_failed = getattr(handler, "on_failed", None)
    if not callable(on_failed):
        return
    try:
        await on_failed(context, error)
    except StorageError:
        raise
    except Exception:
        logger.exception("Job failure hook raised", job_id=context.job_id, job_error=error)


def _normalise_result(result: Any) -> dict[str, Any] | None:
    if result is None or isinstance(result, dict):
        return result
    return {"value": result}

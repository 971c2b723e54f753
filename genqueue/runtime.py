"""
Builds one instance of every component and wires them together.

Nothing in the package is a process-wide singleton: the API, the CLI and each test build
their own ``Runtime``.
"""

import importlib
import random
from typing import Any

from fastapi import Depends, Request

from genqueue.config.logging import get_logger
from genqueue.config.settings import LockBackend, Settings, settings as default_settings
from genqueue.infra.clock import Clock, utcnow
from genqueue.infra.database import Database
from genqueue.infra.locks import DatabaseLockBackend, DistributedLock, MemoryLockBackend
from genqueue.infra.monitoring import PerformanceMonitor
from genqueue.v1.core.registries import ItemGenerator, JobRegistry, PeriodicTriggerHost
from genqueue.v1.jobs.default_handlers import build_default_handlers
from genqueue.v1.jobs.handlers import HandlerRegistry
from genqueue.v1.jobs.scheduler import BackgroundScheduler
from genqueue.v1.jobs.store import JobStore
from genqueue.v1.polling.poller import TaskCompletionPoller
from genqueue.v1.polling.queue import PollingQueue
from genqueue.v1.tasks.repository import TaskRepository
from genqueue.v1.tasks.service import GenerationTaskService

logger = get_logger(__name__)


def load_item_generator(path: str) -> ItemGenerator:
    """Import ``package.module:attr``; classes are instantiated without arguments."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Item generator path must look like 'module:attr', got {path!r}")
    target: Any = getattr(importlib.import_module(module_name), attr)
    if isinstance(target, type):
        target = target()
    if not callable(getattr(target, "generate", None)):
        raise TypeError(f"{path} does not provide a generate() method")
    return target


class Runtime:
    def __init__(
        self,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        generator: ItemGenerator | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings or default_settings
        self.clock = clock
        self.database = Database(self.settings)

        if self.settings.lock_backend == LockBackend.MEMORY:
            backend = MemoryLockBackend()
        else:
            backend = DatabaseLockBackend(self.database)
        self.lock = DistributedLock(backend, clock)
        self.monitor = PerformanceMonitor(self.settings.slow_operation_threshold_s)

        if generator is None and self.settings.item_generator:
            generator = load_item_generator(self.settings.item_generator)

        self.jobs = JobStore(self.database, self.settings, clock, rng)
        self.polling = PollingQueue(self.database, self.lock, self.settings, clock)
        self.tasks = GenerationTaskService(
            TaskRepository(self.database, self.settings, clock),
            self.jobs,
            self.polling,
            self.settings,
            clock,
            generator,
        )
        self.polling.set_poller(TaskCompletionPoller(self.tasks))

        registry = JobRegistry()
        self.handlers = HandlerRegistry(
            self.jobs,
            self.settings,
            self.monitor,
            registry=registry,
            defaults=build_default_handlers(self.jobs, self.tasks, self.polling, registry),
        )
        self.scheduler = BackgroundScheduler(
            self.jobs, self.handlers, self.lock, self.settings
        )
        self.scheduler.init()

    def register_triggers(self, host: PeriodicTriggerHost) -> None:
        """Attach every periodic callback to ``host``."""
        self.scheduler.init(host)
        self.polling.register_triggers(host)
        self.tasks.register_triggers(host)

    async def startup(self) -> None:
        await self.database.ensure_schema()
        logger.info(
            "Runtime started",
            environment=self.settings.environment,
            lock_backend=self.settings.lock_backend.value,
            handlers=sorted(self.handlers.registered_types()),
        )

    async def close(self) -> None:
        await self.database.close()


def get_runtime(request: Request) -> Runtime:
    """Dependency returning the application's runtime."""
    return request.app.state.runtime


# Convenience alias for dependency injection
RuntimeDep = Depends(get_runtime)

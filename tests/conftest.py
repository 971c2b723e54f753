import random
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from genqueue.config.settings import Settings
from genqueue.main import create_app
from genqueue.runtime import Runtime


class FakeClock:
    """Controllable clock; call it for the current time, advance it explicitly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeGenerator:
    """Item generator recording calls; ids in ``failures`` raise."""

    def __init__(self):
        self.calls: list[str] = []
        self.failures: set[str] = set()
        self.before_generate = None

    async def generate(
        self, workflow_type: str, item_id: str, task_id: str
    ) -> dict[str, Any]:
        if self.before_generate is not None:
            await self.before_generate(item_id)
        self.calls.append(item_id)
        if item_id in self.failures:
            raise RuntimeError(f"generation failed for {item_id}")
        return {"item_id": item_id, "workflow_type": workflow_type}


class FakeTriggerHost:
    """Collects add_job calls the way APScheduler would receive them."""

    def __init__(self):
        self.jobs: dict[str, dict[str, Any]] = {}

    def add_job(self, func, trigger=None, **kwargs):
        self.jobs[kwargs["id"]] = {"func": func, "trigger": trigger, **kwargs}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings over a temporary SQLite file with deterministic backoff."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        environment="development",
        debug=True,
        job_backoff_jitter=0,
    )


@pytest.fixture
async def runtime(settings, clock, generator) -> AsyncGenerator[Runtime, None]:
    """A started runtime on its own database."""
    rt = Runtime(settings, clock=clock, generator=generator, rng=random.Random(7))
    await rt.startup()
    yield rt
    await rt.close()


@pytest.fixture
def trigger_host() -> FakeTriggerHost:
    return FakeTriggerHost()


@pytest.fixture
async def app(runtime):
    """FastAPI application bound to the test runtime."""
    return create_app(runtime)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

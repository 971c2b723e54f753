"""Run CLI commands against a local runtime."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer

from genqueue.config.settings import Settings
from genqueue.runtime import Runtime
from genqueue.v1.core.exceptions import GenQueueException

from .formatting import print_error

T = TypeVar("T")


def build_runtime() -> Runtime:
    """Fresh settings on every call so environment changes are honoured."""
    return Runtime(Settings())


def run_with_runtime(action: Callable[[Runtime], Awaitable[T]]) -> T:
    """Start a runtime, run ``action`` against it and always close it."""

    async def _run() -> T:
        runtime = build_runtime()
        try:
            await runtime.startup()
            return await action(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(_run())
    except GenQueueException as e:
        print_error(e.message)
        raise typer.Exit(1) from None

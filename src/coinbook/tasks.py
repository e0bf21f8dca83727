"""Supervised runner for fire-and-forget background work.

Every background coroutine gets a name, runs under a concurrency bound and
reports failures to telemetry instead of surfacing them to whoever spawned it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Coroutine
from typing import Any

import structlog

from coinbook.telemetry import Telemetry

logger = structlog.get_logger()


class TaskRunner:
    def __init__(self, telemetry: Telemetry, *, max_concurrency: int = 20) -> None:
        self.telemetry = telemetry
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task[Any]] = set()
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any], **context: Any) -> asyncio.Task[Any]:  # noqa: ANN401
        """Schedule ``coro``; errors are logged and captured, never raised."""
        task = asyncio.create_task(self._run(name, coro, context), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, coro: Coroutine[Any, Any, Any], context: dict[str, Any]) -> Any:  # noqa: ANN401
        started = time.monotonic()
        async with self._semaphore:
            try:
                result = await coro
            except asyncio.CancelledError:
                logger.info("background_task_cancelled", task=name, **context)
                raise
            except Exception as exc:
                self.failed += 1
                logger.error("background_task_failed", task=name, error=str(exc), **context)
                self.telemetry.capture_exception(exc, tags={"task": name}, extra=context)
                return None
        self.completed += 1
        logger.debug("background_task_done", task=name, duration_ms=round((time.monotonic() - started) * 1000, 1))
        return result

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for everything spawned so far, including work spawned meanwhile."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            done, _ = await asyncio.wait(set(self._tasks), timeout=remaining)
            if deadline is not None and time.monotonic() >= deadline:
                break
            if not done:
                break

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def stats(self) -> dict[str, int]:
        return {"pending": self.pending, "completed": self.completed, "failed": self.failed}

"""Per-key admission and fire-and-forget background work."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import AsyncIterator, TypeVar

from loguru import logger

T = TypeVar("T")


class KeyedAdmission:
    """
    Serialize work per key.

    At most ``limit`` holders per key run at once; other keys proceed in
    parallel. Idle keys are forgotten so the map does not grow unbounded.
    """

    def __init__(self, limit: int = 1):
        self.limit = max(1, limit)
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        semaphore = self._semaphores.get(key)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self.limit)
            self._semaphores[key] = semaphore
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with semaphore:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._semaphores[key]

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.hold(key):
            return await fn()

    def active_keys(self) -> list[str]:
        return list(self._holders)


class BackgroundWorkQueue:
    """Track detached tasks; failures are logged, never raised to the caller."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def submit(self, name: str, fn: Callable[[], Awaitable[object]]) -> asyncio.Task:
        async def _runner() -> None:
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"Background task {name} failed: {exc}")

        task = asyncio.create_task(_runner(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all tracked tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable


FlushFn = Callable[[], Awaitable[None]]


class SingletonTaskRegistry:
    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def start_once(self, name: str, factory: Callable[[], Awaitable[None]]) -> asyncio.Task:
        task = self._tasks.get(name)
        if task and not task.done():
            return task
        task = asyncio.create_task(factory(), name=name)
        self._tasks[name] = task
        return task

    def get(self, name: str) -> asyncio.Task | None:
        return self._tasks.get(name)

    def running(self) -> list[asyncio.Task]:
        return [task for task in self._tasks.values() if not task.done()]

    async def wait_all(self, timeout: float) -> list[str]:
        """Wait for running tasks to finish; return the names still running after ``timeout``."""
        tasks = self.running()
        if not tasks:
            return []
        _, pending = await asyncio.wait(tasks, timeout=max(0.0, float(timeout)))
        return sorted(task.get_name() for task in pending)

    async def cancel_all(self) -> None:
        tasks = self.running()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class DebouncedFlusher:
    """Coalesces bursts of ``mark_dirty`` calls into one trailing ``flush_fn`` call.

    Every call restarts the quiet window. A flush that is already running is never
    cancelled; marks arriving while it runs arm a fresh window.
    """

    def __init__(self, flush_fn: FlushFn, *, debounce_seconds: float = 5.0) -> None:
        self.flush_fn = flush_fn
        self.debounce = float(debounce_seconds)
        self._generation = 0
        self._waiting: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._waiting is not None and not self._waiting.done()

    @property
    def flushing(self) -> bool:
        return bool(self._inflight)

    def mark_dirty(self) -> None:
        self._generation += 1
        if self.pending:
            return
        task = asyncio.create_task(self._debounced(self._generation))
        self._waiting = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def cancel(self) -> None:
        if self.pending:
            assert self._waiting is not None
            self._waiting.cancel()
        self._waiting = None

    async def wait_idle(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _debounced(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.debounce)
            if self._generation == generation:
                break
            generation = self._generation

        if self._waiting is asyncio.current_task():
            self._waiting = None
        await self.flush_fn()

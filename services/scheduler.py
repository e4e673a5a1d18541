from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Awaitable, Callable

from bot.task_registry import SingletonTaskRegistry


log = logging.getLogger("qutie.scheduler")

TickFn = Callable[[], Awaitable[None]]

DEFAULT_STAGGER_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class ScheduledTask:
    name: str
    interval_seconds: float
    tick: TickFn

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Scheduled task name must not be empty")
        if self.interval_seconds <= 0:
            raise ValueError(f"Scheduled task {self.name!r} interval must be > 0")


async def _wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Return True once ``stop_event`` is set, False when ``timeout`` elapses first."""
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, float(timeout)))
    except asyncio.TimeoutError:
        return False
    return True


async def run_periodically(
    task: ScheduledTask,
    *,
    stop_event: asyncio.Event,
    stagger_seconds: float = DEFAULT_STAGGER_SECONDS,
) -> None:
    log.info(
        "%s starting (first tick in %.1fs, interval %.1fs)",
        task.name,
        stagger_seconds,
        task.interval_seconds,
    )
    if await _wait_for_stop(stop_event, stagger_seconds):
        log.info("%s stopped before first tick", task.name)
        return

    while True:
        try:
            await task.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("%s tick failed", task.name)

        if await _wait_for_stop(stop_event, task.interval_seconds):
            break

    log.info("%s stopping", task.name)


def chain_steps(*steps: TickFn) -> TickFn:
    """Run ``steps`` in order as one tick; a failing step skips the rest."""

    async def _tick() -> None:
        for step in steps:
            await step()

    return _tick


class TaskScheduler:
    def __init__(
        self,
        stop_event: asyncio.Event,
        *,
        stagger_seconds: float = DEFAULT_STAGGER_SECONDS,
        registry: SingletonTaskRegistry | None = None,
    ) -> None:
        self.stop_event = stop_event
        self.stagger_seconds = float(stagger_seconds)
        self.registry = registry or SingletonTaskRegistry()
        self._tasks: dict[str, ScheduledTask] = {}

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks)

    def add(self, task: ScheduledTask) -> None:
        if task.name in self._tasks:
            raise ValueError(f"Scheduled task {task.name!r} already registered")
        self._tasks[task.name] = task

    def start(self) -> list[asyncio.Task]:
        started: list[asyncio.Task] = []
        for name, task in self._tasks.items():
            started.append(
                self.registry.start_once(
                    f"scheduler:{name}",
                    lambda task=task: run_periodically(
                        task,
                        stop_event=self.stop_event,
                        stagger_seconds=self.stagger_seconds,
                    ),
                )
            )
        return started

    async def stop(self, *, timeout: float = 10.0) -> list[str]:
        """Signal every loop to exit and wait; cancel loops still running after ``timeout``."""
        self.stop_event.set()
        stragglers = await self.registry.wait_all(timeout)
        if stragglers:
            log.warning("Scheduled tasks did not stop in %.1fs, cancelling: %s", timeout, ", ".join(stragglers))
            await self.registry.cancel_all()
        return stragglers

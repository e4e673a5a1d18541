from __future__ import annotations

import asyncio
import logging
import time

import pytest

from services.scheduler import ScheduledTask, TaskScheduler, chain_steps, run_periodically


def test_scheduled_task_rejects_non_positive_interval():
    async def _tick() -> None:
        return None

    with pytest.raises(ValueError, match="interval must be > 0"):
        ScheduledTask("bad", 0, _tick)


@pytest.mark.asyncio
async def test_first_tick_waits_for_stagger_and_second_for_interval():
    stop_event = asyncio.Event()
    started = time.monotonic()
    tick_times: list[float] = []

    async def _tick() -> None:
        tick_times.append(time.monotonic() - started)
        if len(tick_times) == 2:
            stop_event.set()

    task = ScheduledTask("timed", 0.3, _tick)
    await asyncio.wait_for(run_periodically(task, stop_event=stop_event, stagger_seconds=0.05), timeout=2)

    assert len(tick_times) == 2
    assert tick_times[0] >= 0.05
    assert tick_times[1] >= 0.35


@pytest.mark.asyncio
async def test_failing_tick_does_not_stop_schedule(caplog):
    stop_event = asyncio.Event()
    calls = 0

    async def _tick() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")
        stop_event.set()

    task = ScheduledTask("flaky", 0.05, _tick)
    with caplog.at_level(logging.ERROR, logger="qutie.scheduler"):
        await asyncio.wait_for(run_periodically(task, stop_event=stop_event, stagger_seconds=0), timeout=2)

    assert calls == 2
    assert "flaky tick failed" in caplog.text


@pytest.mark.asyncio
async def test_stop_during_stagger_skips_first_tick():
    stop_event = asyncio.Event()
    calls = 0

    async def _tick() -> None:
        nonlocal calls
        calls += 1

    task = ScheduledTask("never", 1, _tick)
    runner = asyncio.create_task(run_periodically(task, stop_event=stop_event, stagger_seconds=5))
    await asyncio.sleep(0.05)
    stop_event.set()
    await asyncio.wait_for(runner, timeout=1)

    assert calls == 0


@pytest.mark.asyncio
async def test_stop_does_not_interrupt_running_tick():
    stop_event = asyncio.Event()
    tick_started = asyncio.Event()
    finished = False

    async def _tick() -> None:
        nonlocal finished
        tick_started.set()
        await asyncio.sleep(0.1)
        finished = True

    task = ScheduledTask("slow", 10, _tick)
    runner = asyncio.create_task(run_periodically(task, stop_event=stop_event, stagger_seconds=0))
    await tick_started.wait()
    stop_event.set()
    await asyncio.wait_for(runner, timeout=1)

    assert finished is True


@pytest.mark.asyncio
async def test_chain_steps_skips_later_steps_after_failure():
    calls: list[str] = []

    async def _refresh() -> None:
        calls.append("refresh")
        raise RuntimeError("platform down")

    async def _evaluate() -> None:
        calls.append("evaluate")

    with pytest.raises(RuntimeError):
        await chain_steps(_refresh, _evaluate)()

    assert calls == ["refresh"]


@pytest.mark.asyncio
async def test_task_scheduler_starts_each_task_once_and_stops():
    stop_event = asyncio.Event()
    calls = 0

    async def _tick() -> None:
        nonlocal calls
        calls += 1

    scheduler = TaskScheduler(stop_event, stagger_seconds=0)
    scheduler.add(ScheduledTask("counter", 0.05, _tick))
    with pytest.raises(ValueError, match="already registered"):
        scheduler.add(ScheduledTask("counter", 0.05, _tick))

    first = scheduler.start()
    second = scheduler.start()
    assert first[0] is second[0]

    await asyncio.sleep(0.12)
    stragglers = await scheduler.stop(timeout=1)

    assert stragglers == []
    assert stop_event.is_set()
    assert calls >= 2
    assert first[0].done()


@pytest.mark.asyncio
async def test_task_scheduler_cancels_loops_stuck_past_timeout(caplog):
    stop_event = asyncio.Event()
    tick_started = asyncio.Event()

    async def _stuck() -> None:
        tick_started.set()
        await asyncio.sleep(10)

    scheduler = TaskScheduler(stop_event, stagger_seconds=0)
    scheduler.add(ScheduledTask("stuck", 1, _stuck))
    started = scheduler.start()
    await tick_started.wait()

    with caplog.at_level(logging.WARNING, logger="qutie.scheduler"):
        stragglers = await scheduler.stop(timeout=0.05)

    assert stragglers == ["scheduler:stuck"]
    assert started[0].cancelled()
    assert "did not stop" in caplog.text

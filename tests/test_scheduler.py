import asyncio

import anyio
import pytest

from mongo_sessions.scheduler import PeriodicTask

pytestmark = pytest.mark.anyio


async def test_failing_tick_does_not_stop_the_schedule():
    calls = []

    async def tick():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("first tick fails")

    task = PeriodicTask("test-loop", tick, delay=0, period=0.01)
    task.start()
    with anyio.fail_after(2):
        while len(calls) < 3:
            await asyncio.sleep(0.01)
    await task.stop()
    assert not task.running
    assert len(calls) >= 3


async def test_zero_period_runs_once():
    calls = []

    async def tick():
        calls.append(1)

    task = PeriodicTask("one-shot", tick, delay=0, period=0)
    task.start()
    with anyio.fail_after(2):
        while task.running:
            await asyncio.sleep(0.01)
    assert calls == [1]
    await task.stop()


async def test_stop_before_delay_skips_the_tick():
    calls = []

    async def tick():
        calls.append(1)

    task = PeriodicTask("late", tick, delay=3600, period=60)
    task.start()
    assert task.running
    await task.stop()
    assert calls == []

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

log = logging.getLogger(__name__)


class PeriodicTask:
    """
    Background loop: wait ``delay`` seconds, run ``func``, then again every
    ``period`` seconds (once only when ``period`` <= 0).

    A failing tick is logged and the schedule continues. ``stop()`` lets an
    in-flight tick finish instead of cancelling it.
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[Any]], delay: float, period: float = 0.0):
        self.name = name
        self.func = func
        self.delay = delay
        self.period = period
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        log.info("%s scheduled delay=%ss period=%ss", self.name, self.delay, self.period)

    async def stop(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            await task
        log.info("%s stopped", self.name)

    async def _run(self) -> None:
        if await self._wait(self.delay):
            return
        while True:
            try:
                await self.func()
            except Exception:
                log.exception("%s tick failed", self.name)
            if self.period <= 0:
                return
            if await self._wait(self.period):
                return

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0))
            return True
        except asyncio.TimeoutError:
            return False


__all__ = ["PeriodicTask"]

"""
Removes aged session documents from the store.

Only one node in a cluster needs to run a purger. It ignores the id
registry: any record not accessed for ``minimal_purge_age`` seconds is
deleted, whichever node created it and whether or not it is still valid.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .dal.session_dal import ensure_indexes
from .db.store import DocumentStore
from .errors import ConfigurationError
from .models.session_record import ACCESSED, ID
from .scheduler import PeriodicTask

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionPurger:
    def __init__(
        self,
        store: DocumentStore,
        *,
        purge_delay: float = 60 * 60,
        purge_period: float = 0.0,
        minimal_purge_age: float = 24 * 60 * 60,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.clock = clock
        self._purge_delay = purge_delay
        self._purge_period = purge_period
        self._minimal_purge_age = minimal_purge_age
        self._task: Optional[PeriodicTask] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _check_stopped(self, setting: str) -> None:
        if self._running:
            raise ConfigurationError("session purger", setting)

    @property
    def purge_delay(self) -> float:
        return self._purge_delay

    @purge_delay.setter
    def purge_delay(self, value: float) -> None:
        self._check_stopped("purge_delay")
        self._purge_delay = value

    @property
    def purge_period(self) -> float:
        return self._purge_period

    @purge_period.setter
    def purge_period(self, value: float) -> None:
        self._check_stopped("purge_period")
        self._purge_period = value

    @property
    def minimal_purge_age(self) -> float:
        return self._minimal_purge_age

    @minimal_purge_age.setter
    def minimal_purge_age(self, value: float) -> None:
        self._check_stopped("minimal_purge_age")
        self._minimal_purge_age = value

    async def start(self) -> None:
        if self._running:
            return
        # no telling when the first purge runs relative to other nodes
        await ensure_indexes(self.store)
        self._task = PeriodicTask("session-purger", self.purge, self._purge_delay, self._purge_period)
        self._task.start()
        self._running = True

    async def stop(self) -> None:
        if self._task:
            await self._task.stop()
            self._task = None
        self._running = False

    async def purge(self) -> int:
        """One purge pass. Returns the number of documents deleted."""
        cutoff = self.clock() - timedelta(seconds=self._minimal_purge_age)
        removed = 0
        async for doc in self.store.find({ACCESSED: {"$lt": cutoff}}, {ID: 1}):
            cluster_id = doc.get(ID)
            # re-check age so a session touched since the scan survives
            n = await self.store.remove({ID: cluster_id, ACCESSED: {"$lt": cutoff}})
            if n:
                log.info("purged session id=%s", cluster_id)
            removed += n
        log.debug("purge pass removed=%d cutoff=%s", removed, cutoff)
        return removed


__all__ = ["SessionPurger"]

"""
Session id registry for one node.

The registry only holds the ids this node has seen, which is what the
scavenger re-checks. The store stays the source of truth: a scavenge tick
looks for registered ids whose record has not been accessed for
``scavenge_delay`` seconds, marks those records invalid and notifies every
local context subscribed through :meth:`SessionIdManager.subscribe`.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Set

from .dal.session_dal import ensure_indexes
from .db.store import DocumentStore
from .errors import ConfigurationError
from .models.session_record import ACCESSED, ID, INVALIDATED, VALID
from .scheduler import PeriodicTask

log = logging.getLogger(__name__)

InvalidateCallback = Callable[[str], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionIdManager:
    def __init__(
        self,
        store: DocumentStore,
        *,
        worker_name: Optional[str] = None,
        scavenge_delay: float = 30 * 60,
        scavenge_period: float = 10 * 60,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.worker_name = worker_name
        self.clock = clock
        self._scavenge_delay = scavenge_delay
        self._scavenge_period = scavenge_period

        self._ids: Set[str] = set()
        self._lock = asyncio.Lock()
        self._callbacks: List[InvalidateCallback] = []
        self._task: Optional[PeriodicTask] = None
        self._running = False

    # ----------------- Configuration -----------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def scavenge_delay(self) -> float:
        return self._scavenge_delay

    @scavenge_delay.setter
    def scavenge_delay(self, value: float) -> None:
        if self._running:
            raise ConfigurationError("session id manager", "scavenge_delay")
        self._scavenge_delay = value

    @property
    def scavenge_period(self) -> float:
        return self._scavenge_period

    @scavenge_period.setter
    def scavenge_period(self, value: float) -> None:
        if self._running:
            raise ConfigurationError("session id manager", "scavenge_period")
        self._scavenge_period = value

    # ----------------- Lifecycle -----------------

    async def start(self) -> None:
        if self._running:
            return
        await ensure_indexes(self.store)
        if self._scavenge_delay > 0:
            self._task = PeriodicTask(
                "session-scavenger", self.scavenge, self._scavenge_delay, self._scavenge_period
            )
            self._task.start()
        self._running = True
        log.info("session id manager started worker=%s", self.worker_name)

    async def stop(self) -> None:
        if self._task:
            await self._task.stop()
            self._task = None
        self._running = False
        log.info("session id manager stopped")

    # ----------------- Registry -----------------

    def subscribe(self, callback: InvalidateCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: InvalidateCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def add_session(self, cluster_id: str) -> None:
        if not cluster_id:
            return
        async with self._lock:
            self._ids.add(cluster_id)

    async def remove_session(self, cluster_id: str) -> None:
        if not cluster_id:
            return
        async with self._lock:
            self._ids.discard(cluster_id)

    async def known_ids(self) -> Set[str]:
        async with self._lock:
            return set(self._ids)

    async def id_in_use(self, cluster_id: str) -> bool:
        """Whether the store holds a valid record for the id."""
        o = await self.store.find_one({ID: cluster_id}, {VALID: 1})
        return bool(o and o.get(VALID) is True)

    async def invalidate_all(self, cluster_id: str) -> None:
        """Forget the id and tell every subscribed context to invalidate it."""
        async with self._lock:
            await self._invalidate_all_locked(cluster_id)

    async def _invalidate_all_locked(self, cluster_id: str) -> None:
        self._ids.discard(cluster_id)
        for callback in list(self._callbacks):
            try:
                await callback(cluster_id)
            except Exception:
                log.exception("invalidate callback failed id=%s", cluster_id)

    # ----------------- Ids -----------------

    async def new_session_id(self, requested: Optional[str] = None) -> str:
        """
        Reuse ``requested`` when it names a live session (the same browser
        session seen by another context), otherwise mint an unused id.
        """
        if requested:
            cluster_id = self.get_cluster_id(requested)
            if await self.id_in_use(cluster_id):
                return cluster_id
        while True:
            cluster_id = uuid.uuid4().hex
            if not await self.id_in_use(cluster_id):
                return cluster_id

    def get_cluster_id(self, node_id: str) -> str:
        dot = node_id.rfind(".")
        return node_id[:dot] if dot > 0 else node_id

    def get_node_id(self, cluster_id: str) -> str:
        if self.worker_name:
            return f"{cluster_id}.{self.worker_name}"
        return cluster_id

    # ----------------- Scavenger -----------------

    async def scavenge(self) -> int:
        """One scavenger tick. Returns the number of ids invalidated."""
        async with self._lock:
            if not self._ids:
                return 0
            cutoff = self.clock() - timedelta(seconds=self._scavenge_delay)
            query = {ID: {"$in": sorted(self._ids)}, ACCESSED: {"$lt": cutoff}}
            stale = [doc[ID] async for doc in self.store.find(query, {ID: 1})]

            for cluster_id in stale:
                log.info("scavenging old session id=%s", cluster_id)
                # the record may not be in memory in any context here
                await self.store.update(
                    {ID: cluster_id, VALID: True},
                    {"$set": {VALID: False, INVALIDATED: self.clock()}},
                )
                await self._invalidate_all_locked(cluster_id)
            return len(stale)


__all__ = ["SessionIdManager", "InvalidateCallback"]

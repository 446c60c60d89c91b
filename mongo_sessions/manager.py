from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .codec import AttributeCodec
from .dal.session_dal import SessionStore, context_id_for, ensure_indexes
from .id_manager import SessionIdManager
from .scheduler import PeriodicTask
from .session import Session
from .settings import RefreshPolicy, SavePolicy

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """
    Sessions of one context (application) on this node.

    Holds the in-memory Session proxies, applies the save/refresh policies
    through them, and subscribes to the id manager so that an invalidation
    seen anywhere on this node reaches the context.
    """

    def __init__(
        self,
        id_manager: SessionIdManager,
        *,
        context_path: Optional[str] = "/",
        virtual_hosts: Optional[List[str]] = None,
        codec: Optional[AttributeCodec] = None,
        save_policy: SavePolicy = SavePolicy.if_dirty,
        refresh_policy: RefreshPolicy = RefreshPolicy.stale,
        stale_period: float = 0.0,
        save_all_attributes: bool = False,
        max_inactive_interval: float = 1800.0,
        idle_period: float = 0.0,
        invalidate_on_stop: bool = False,
        preserve_on_stop: bool = True,
        clock: Callable[[], datetime] = _now,
    ):
        self.id_manager = id_manager
        self.context_id = context_id_for(context_path, virtual_hosts)
        self.clock = clock
        self.store = SessionStore(
            id_manager.store,
            self.context_id,
            codec,
            save_all_attributes=save_all_attributes,
            clock=clock,
        )
        self.save_policy = save_policy
        self.refresh_policy = refresh_policy
        self.stale_period = stale_period
        self.max_inactive_interval = max_inactive_interval
        self.idle_period = idle_period
        self.invalidate_on_stop = invalidate_on_stop
        self.preserve_on_stop = preserve_on_stop

        self._sessions: Dict[str, Session] = {}
        self._idle_task: Optional[PeriodicTask] = None
        self._running = False

    @property
    def codec(self) -> AttributeCodec:
        return self.store.codec

    @property
    def running(self) -> bool:
        return self._running

    def __len__(self) -> int:
        return len(self._sessions)

    # ----------------- Lifecycle -----------------

    async def start(self) -> None:
        if self._running:
            return
        await ensure_indexes(self.store.store)
        self.id_manager.subscribe(self.invalidate_session)
        if self.idle_period > 0:
            self._idle_task = PeriodicTask(
                f"session-idle-{self.context_id}", self.evict_idle, self.idle_period, self.idle_period
            )
            self._idle_task.start()
        self._running = True
        log.info("session manager started ctx=%s", self.context_id)

    async def stop(self) -> None:
        if self._idle_task:
            await self._idle_task.stop()
            self._idle_task = None
        self.id_manager.unsubscribe(self.invalidate_session)

        for session in list(self._sessions.values()):
            if self.invalidate_on_stop:
                await session.invalidate_local()
            elif self.preserve_on_stop:
                await session.save()
            await self.id_manager.remove_session(session.cluster_id)
        self._sessions.clear()
        self._running = False
        log.info("session manager stopped ctx=%s", self.context_id)

    # ----------------- Sessions -----------------

    async def new_session(self, requested_id: Optional[str] = None) -> Session:
        """Create, persist and register a session; the caller holds one access on it."""
        cluster_id = await self.id_manager.new_session_id(requested_id)
        session = await Session.create(self, cluster_id, self.clock())
        self._sessions[cluster_id] = session
        await self.id_manager.add_session(cluster_id)
        log.debug("new session id=%s ctx=%s", cluster_id, self.context_id)
        return session

    async def get_session(self, cluster_id: str) -> Optional[Session]:
        session = self._sessions.get(cluster_id)
        if session is not None and not session.evicted:
            return session

        loaded = await self.store.load_session(cluster_id, self)
        if loaded is None:
            return None
        # another request may have loaded it while we were waiting on the store
        session = self._sessions.get(cluster_id)
        if session is not None and not session.evicted:
            return session
        self._sessions[cluster_id] = loaded
        await self.id_manager.add_session(cluster_id)
        return loaded

    def get_in_memory(self, cluster_id: str) -> Optional[Session]:
        return self._sessions.get(cluster_id)

    async def access(self, session: Session) -> bool:
        """Start one request on the session. False means the session is no longer usable."""
        if await session.access(self.clock()):
            return True
        if session.evicted:
            return False
        if session.is_valid:
            # expired while idle
            await session.invalidate()
        else:
            await self._forget(session)
        return False

    async def acquire(self, cluster_id: str) -> Optional[Session]:
        """Look up and access a session, reloading it if idle eviction got there first."""
        while True:
            session = await self.get_session(cluster_id)
            if session is None:
                return None
            if await self.access(session):
                return session
            if not session.evicted:
                return None

    async def complete(self, session: Session) -> None:
        await session.complete()

    async def remove_session(self, session: Session) -> bool:
        """Drop the session from this context only; the record stays valid for other contexts."""
        await self._forget(session)
        return await self.store.remove(session)

    async def session_invalidated(self, session: Session) -> None:
        """A session of this context was invalidated by a request; tell every context."""
        if self._sessions.get(session.cluster_id) is session:
            del self._sessions[session.cluster_id]
        await self.id_manager.invalidate_all(session.cluster_id)

    async def invalidate_session(self, cluster_id: str) -> None:
        """Invalidate-by-id hook subscribed to the id manager."""
        session = self._sessions.pop(cluster_id, None)
        if session is not None:
            await session.invalidate_local()
        await self.store.invalidate_session(cluster_id)

    async def evict_idle(self) -> None:
        """Invalidate expired sessions and drop long-idle ones from memory."""
        now = self.clock()
        for session in list(self._sessions.values()):
            # both checks run under the session lock, so a session in use is skipped
            if await session.expire(now):
                await self.session_invalidated(session)
            elif self.idle_period > 0 and await session.try_evict(now, self.idle_period):
                await self._forget(session)
                log.debug("session idled out of memory id=%s", session.cluster_id)

    async def _forget(self, session: Session) -> None:
        # a reloaded proxy for the same id keeps its registration
        if self._sessions.get(session.cluster_id) is session:
            del self._sessions[session.cluster_id]
            await self.id_manager.remove_session(session.cluster_id)


__all__ = ["SessionManager"]

"""
In-memory session proxy.

A Session is shared by every request currently using the same session id in
one context. It keeps a reference count of those requests, the names of
attributes changed since the last save, and the version token it last saw in
the store. Refresh happens on the 0 -> 1 transition of the count, saving on
the 1 -> 0 transition, both according to the manager's policies.

Methods grouped under "store hooks" are called by SessionStore while the
caller already holds the session lock; they never take it themselves.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Protocol, Set, runtime_checkable

from .errors import InvalidSessionError
from .models.session_record import CONTEXT_VERSION
from .settings import RefreshPolicy, SavePolicy

if TYPE_CHECKING:
    from .manager import SessionManager

log = logging.getLogger(__name__)


@runtime_checkable
class SessionBindingListener(Protocol):
    def value_bound(self, session: "Session", name: str) -> None: ...

    def value_unbound(self, session: "Session", name: str) -> None: ...


@runtime_checkable
class SessionActivationListener(Protocol):
    def will_passivate(self, session: "Session") -> None: ...

    def did_activate(self, session: "Session") -> None: ...


class Session:
    def __init__(
        self,
        manager: "SessionManager",
        created: datetime,
        accessed: datetime,
        cluster_id: str,
        version: Optional[int] = None,
    ):
        self._manager = manager
        self.cluster_id = cluster_id
        self.created = created
        self.accessed = accessed
        self.last_accessed = accessed
        self.max_inactive_interval = manager.max_inactive_interval
        self.is_new = False

        self._attributes: Dict[str, Any] = {}
        self._dirty: Optional[Set[str]] = None
        self._active = 0
        self._valid = True
        self._evicted = False
        self._version = version
        self._last_sync = manager.clock()
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return (
            f"Session(id={self.cluster_id!r}, version={self._version}, "
            f"active={self._active}, valid={self._valid})"
        )

    @classmethod
    async def create(cls, manager: "SessionManager", cluster_id: str, now: datetime) -> "Session":
        """Brand new session: persisted immediately and counted as in use by the creating request."""
        session = cls(manager, created=now, accessed=now, cluster_id=cluster_id)
        session.is_new = True
        async with session._lock:
            await session._save(True)
            session._active += 1
        return session

    # ----------------- State -----------------

    @property
    def version(self) -> Optional[int]:
        return self._version

    @property
    def active(self) -> int:
        return self._active

    @property
    def is_valid(self) -> bool:
        return self._valid

    @property
    def evicted(self) -> bool:
        """Dropped from memory by idle eviction; a fresh proxy must be loaded."""
        return self._evicted

    @property
    def is_dirty(self) -> bool:
        return bool(self._dirty)

    @property
    def names(self) -> List[str]:
        return list(self._attributes)

    def is_expired(self, now: datetime) -> bool:
        if self.max_inactive_interval <= 0:
            return False
        return (now - self.accessed).total_seconds() > self.max_inactive_interval

    # ----------------- Attribute API -----------------

    def get_attribute(self, name: str) -> Any:
        return self._attributes.get(name)

    async def set_attribute(self, name: str, value: Any) -> None:
        if value is None:
            await self.remove_attribute(name)
            return
        if name == CONTEXT_VERSION:
            raise ValueError(f"attribute name {name!r} is reserved")
        # reject unstorable values now rather than at save time
        self._manager.codec.encode_value(value)
        async with self._lock:
            self._check_valid()
            self._put(name, value)
            await self._save_on_change()

    async def remove_attribute(self, name: str) -> None:
        async with self._lock:
            self._check_valid()
            if name in self._attributes:
                self._put(name, None)
                await self._save_on_change()

    def _put(self, name: str, value: Any) -> None:
        old = self.do_put_or_remove(name, value)
        self.mark_dirty([name])
        if old is not value:
            self.unbind_value(name, old)
            self.bind_value(name, value)

    async def _save_on_change(self) -> None:
        if self._manager.save_policy is SavePolicy.on_change:
            await self._save(True)

    def _check_valid(self) -> None:
        if not self._valid:
            raise InvalidSessionError(f"session {self.cluster_id} is invalid")

    # ----------------- Request lifecycle -----------------

    async def access(self, now: datetime) -> bool:
        """
        Count one more request in. Returns False when the session turned out
        to be invalid (refresh found it gone), expired, or evicted.
        """
        async with self._lock:
            if not self._valid or self._evicted:
                return False
            self._active += 1
            if self._active == 1 and self._refresh_due(now):
                await self._refresh()
                if not self._valid:
                    self._active -= 1
                    return False
            if self.is_expired(now):
                self._active -= 1
                return False
            self.last_accessed = self.accessed
            self.accessed = now
            return True

    async def complete(self) -> None:
        """Count one request out; the last one out applies the save policy."""
        async with self._lock:
            if self._active > 0:
                self._active -= 1
            self.is_new = False
            if self._active or not self._valid:
                return
            policy = self._manager.save_policy
            if policy is SavePolicy.always:
                await self._save(True)
            elif policy in (SavePolicy.if_dirty, SavePolicy.on_change) and self.is_dirty:
                await self._save(True)

    async def invalidate(self) -> None:
        """Invalidate here, in the store, and in every other local context using this id."""
        if await self.invalidate_local():
            await self._manager.session_invalidated(self)

    async def invalidate_local(self) -> bool:
        """Invalidate and persist ``valid=false`` without notifying other contexts."""
        async with self._lock:
            if not self._valid:
                return False
            self.do_invalidate()
            await self._save(False)
        log.info("session invalidated id=%s", self.cluster_id)
        return True

    async def expire(self, now: datetime) -> bool:
        """Invalidate locally if no request holds the session and it has expired."""
        async with self._lock:
            if self._active or not self._valid or not self.is_expired(now):
                return False
            self.do_invalidate()
            await self._save(False)
        log.info("session expired id=%s", self.cluster_id)
        return True

    async def try_evict(self, now: datetime, idle_period: float) -> bool:
        """
        Save and mark evicted if no request holds the session and it has been
        idle longer than ``idle_period``. An evicted proxy refuses new accesses.
        """
        async with self._lock:
            if self._active or not self._valid or self._evicted:
                return False
            if (now - self.accessed).total_seconds() <= idle_period:
                return False
            if self.is_dirty:
                await self._save(True)
            self._evicted = True
        return True

    async def save(self) -> None:
        """Write the session now, whatever the save policy."""
        async with self._lock:
            if self._valid:
                await self._save(True)

    def _refresh_due(self, now: datetime) -> bool:
        policy = self._manager.refresh_policy
        if policy is RefreshPolicy.always:
            return True
        if policy is RefreshPolicy.stale:
            return (now - self._last_sync).total_seconds() > self._manager.stale_period
        return False

    async def _refresh(self) -> None:
        self._version = await self._manager.store.refresh(self, self._version)
        self._last_sync = self._manager.clock()

    async def _save(self, activate_after: bool) -> None:
        version = await self._manager.store.save(self, self._version, activate_after)
        if not self._valid:
            self._version = None
        elif version is not None:
            self._version = version
            self._last_sync = self.accessed

    # ----------------- Store hooks -----------------

    def will_passivate(self) -> None:
        for value in list(self._attributes.values()):
            if isinstance(value, SessionActivationListener):
                value.will_passivate(self)

    def did_activate(self) -> None:
        for value in list(self._attributes.values()):
            if isinstance(value, SessionActivationListener):
                value.did_activate(self)

    def observe_accessed(self, accessed: Optional[datetime]) -> None:
        # another node may have served the session more recently
        if accessed is not None and accessed > self.accessed:
            self.accessed = accessed

    def clear_attributes(self) -> None:
        while self._attributes:
            name, value = self._attributes.popitem()
            self.unbind_value(name, value)

    def do_put_or_remove(self, name: str, value: Any) -> Any:
        if value is None:
            return self._attributes.pop(name, None)
        old = self._attributes.get(name)
        self._attributes[name] = value
        return old

    def bind_value(self, name: str, value: Any) -> None:
        if value is not None and isinstance(value, SessionBindingListener):
            value.value_bound(self, name)

    def unbind_value(self, name: str, value: Any) -> None:
        if value is not None and isinstance(value, SessionBindingListener):
            value.value_unbound(self, name)

    def take_dirty(self) -> Set[str]:
        dirty = self._dirty or set()
        self._dirty = None
        return dirty

    def mark_dirty(self, names: Iterable[str]) -> None:
        if self._dirty is None:
            self._dirty = set()
        self._dirty.update(names)

    def do_invalidate(self) -> None:
        self.clear_attributes()
        self._dirty = None
        self._valid = False

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mongo_sessions.db.store import InMemoryDocumentStore
from mongo_sessions.errors import StoreUnavailable
from mongo_sessions.id_manager import SessionIdManager
from mongo_sessions.manager import SessionManager


class Clock:
    """Settable clock handed to components instead of datetime.now."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyStore(InMemoryDocumentStore):
    """In-memory store that can be switched into an outage, or made to yield on writes."""

    def __init__(self):
        super().__init__()
        self.down = False
        self.slow = False

    async def find_one(self, filter, projection=None):
        if self.down:
            raise StoreUnavailable("connection refused")
        return await super().find_one(filter, projection)

    async def update(self, filter, update, upsert=False, multi=False):
        if self.down:
            raise StoreUnavailable("connection refused")
        if self.slow:
            await asyncio.sleep(0)
        return await super().update(filter, update, upsert=upsert, multi=multi)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def id_manager(store, clock):
    return SessionIdManager(store, scavenge_delay=3600, scavenge_period=600, clock=clock)


@pytest.fixture
def make_manager(id_manager, clock):
    def _make(**kwargs) -> SessionManager:
        kwargs.setdefault("clock", clock)
        return SessionManager(id_manager, **kwargs)

    return _make


def ctx_doc(doc, context_id):
    return (doc or {}).get("context", {}).get(context_id, {})

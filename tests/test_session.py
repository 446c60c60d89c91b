import asyncio
from dataclasses import dataclass, field

import pytest

from mongo_sessions.codec import AttributeCodec, SerializerRegistry
from mongo_sessions.errors import EncodingError, InvalidSessionError
from mongo_sessions.settings import RefreshPolicy, SavePolicy
from tests.conftest import ctx_doc

pytestmark = pytest.mark.anyio


@dataclass
class Recorder:
    """Attribute value that records binding and activation callbacks."""

    label: str
    events: list = field(default_factory=list, compare=False)

    def value_bound(self, session, name):
        self.events.append(("bound", name))

    def value_unbound(self, session, name):
        self.events.append(("unbound", name))

    def will_passivate(self, session):
        self.events.append(("passivate",))

    def did_activate(self, session):
        self.events.append(("activate",))


def recorder_codec() -> AttributeCodec:
    reg = SerializerRegistry()
    reg.register(Recorder, dump=lambda r: r.label.encode(), load=lambda b: Recorder(b.decode()))
    return AttributeCodec(reg)


async def _fresh(manager):
    session = await manager.new_session()
    await manager.complete(session)
    return session


async def test_clean_session_is_not_written_again(make_manager, store):
    manager = make_manager(save_policy=SavePolicy.if_dirty)
    session = await manager.new_session()
    await session.set_attribute("a", 1)
    await manager.complete(session)

    doc = await store.find_one({"id": session.cluster_id})
    assert ctx_doc(doc, manager.context_id)["a"] == 1
    assert not session.is_dirty

    writes = store.calls["update"]
    assert await manager.access(session)
    await manager.complete(session)
    assert store.calls["update"] == writes


async def test_only_the_last_request_out_saves(make_manager, store):
    manager = make_manager()
    session = await _fresh(manager)
    writes = store.calls["update"]

    assert await manager.access(session)
    assert await manager.access(session)
    assert session.active == 2
    await session.set_attribute("x", 1)

    await manager.complete(session)
    assert session.active == 1
    assert store.calls["update"] == writes

    await manager.complete(session)
    assert session.active == 0
    assert store.calls["update"] == writes + 1
    assert session.version == 2


async def test_concurrent_requests_produce_one_save(make_manager, store):
    manager = make_manager()
    session = await _fresh(manager)
    writes = store.calls["update"]

    async def request(i):
        assert await manager.access(session)
        await session.set_attribute(f"k{i}", i)
        await asyncio.sleep(0)
        await manager.complete(session)

    # all requests enter before any leaves
    for _ in range(3):
        assert await manager.access(session)
    await asyncio.gather(*(request(i) for i in range(3)))
    assert store.calls["update"] == writes
    for _ in range(3):
        await manager.complete(session)

    assert store.calls["update"] == writes + 1
    doc = await store.find_one({"id": session.cluster_id})
    assert {k: v for k, v in ctx_doc(doc, manager.context_id).items() if k.startswith("k")} == {
        "k0": 0,
        "k1": 1,
        "k2": 2,
    }


async def test_always_policy_saves_clean_sessions(make_manager, store, clock):
    manager = make_manager(save_policy=SavePolicy.always)
    session = await _fresh(manager)
    assert session.version == 2

    clock.advance(seconds=10)
    assert await manager.access(session)
    await manager.complete(session)
    doc = await store.find_one({"id": session.cluster_id})
    assert doc["accessed"] == clock.now
    assert session.version == 3


async def test_never_policy_only_saves_on_request(make_manager, store):
    manager = make_manager(save_policy=SavePolicy.never)
    session = await manager.new_session()
    await session.set_attribute("a", 1)
    await manager.complete(session)
    doc = await store.find_one({"id": session.cluster_id})
    assert "a" not in ctx_doc(doc, manager.context_id)

    await session.save()
    doc = await store.find_one({"id": session.cluster_id})
    assert ctx_doc(doc, manager.context_id)["a"] == 1


async def test_on_change_policy_saves_every_change(make_manager, store):
    manager = make_manager(save_policy=SavePolicy.on_change)
    session = await manager.new_session()
    await session.set_attribute("a", 1)
    assert session.version == 2
    await session.set_attribute("b", 2)
    assert session.version == 3

    writes = store.calls["update"]
    await manager.complete(session)
    assert store.calls["update"] == writes


async def test_refresh_never_skips_the_store(make_manager, store, clock):
    manager = make_manager(refresh_policy=RefreshPolicy.never)
    session = await _fresh(manager)
    reads = store.calls["find_one"]
    clock.advance(minutes=5)
    assert await manager.access(session)
    assert store.calls["find_one"] == reads


async def test_refresh_always_checks_on_first_access(make_manager, store):
    manager = make_manager(refresh_policy=RefreshPolicy.always)
    session = await _fresh(manager)
    reads = store.calls["find_one"]

    assert await manager.access(session)
    assert await manager.access(session)
    assert store.calls["find_one"] == reads + 1


async def test_stale_refresh_waits_for_the_window(make_manager, store, clock):
    manager = make_manager(refresh_policy=RefreshPolicy.stale, stale_period=60)
    session = await _fresh(manager)
    reads = store.calls["find_one"]

    clock.advance(seconds=30)
    assert await manager.access(session)
    await manager.complete(session)
    assert store.calls["find_one"] == reads

    clock.advance(seconds=31)
    assert await manager.access(session)
    assert store.calls["find_one"] == reads + 1


async def test_expired_session_is_invalidated_on_access(make_manager, store, clock):
    manager = make_manager(max_inactive_interval=60)
    session = await _fresh(manager)

    clock.advance(seconds=120)
    assert await manager.access(session) is False
    assert not session.is_valid
    assert manager.get_in_memory(session.cluster_id) is None
    doc = await store.find_one({"id": session.cluster_id})
    assert doc["valid"] is False


async def test_invalidate_reaches_every_context(id_manager, make_manager, store):
    shop = make_manager(context_path="/shop")
    blog = make_manager(context_path="/blog")
    await shop.start()
    await blog.start()

    s1 = await shop.new_session()
    s2 = await blog.new_session(s1.cluster_id)
    await s2.set_attribute("k", "v")
    await blog.complete(s2)

    await s1.invalidate()

    assert not s2.is_valid
    assert blog.get_in_memory(s1.cluster_id) is None
    assert s1.cluster_id not in await id_manager.known_ids()
    doc = await store.find_one({"id": s1.cluster_id})
    assert doc["valid"] is False
    assert doc.get("context", {}) == {}
    assert not await id_manager.id_in_use(s1.cluster_id)

    await shop.stop()
    await blog.stop()


async def test_invalid_session_rejects_changes(make_manager):
    manager = make_manager()
    session = await manager.new_session()
    await session.invalidate()
    with pytest.raises(InvalidSessionError):
        await session.set_attribute("a", 1)


async def test_reserved_and_unencodable_attributes_are_rejected(make_manager):
    manager = make_manager()
    session = await manager.new_session()
    with pytest.raises(ValueError):
        await session.set_attribute("__version__", 1)
    with pytest.raises(EncodingError):
        await session.set_attribute("obj", object())
    assert session.names == []


async def test_listeners_are_notified(make_manager):
    manager = make_manager(codec=recorder_codec())
    session = await manager.new_session()
    first = Recorder("one")
    await session.set_attribute("r", first)
    assert first.events == [("bound", "r")]

    await manager.complete(session)
    assert first.events[1:] == [("passivate",), ("activate",)]

    assert await manager.access(session)
    second = Recorder("two")
    await session.set_attribute("r", second)
    assert first.events[-1] == ("unbound", "r")
    assert second.events == [("bound", "r")]


async def test_refresh_rebinds_loaded_values(make_manager, store, clock):
    manager = make_manager(codec=recorder_codec())
    session = await manager.new_session()
    await session.set_attribute("r", Recorder("one"))
    await manager.complete(session)
    old = session.get_attribute("r")

    await store.update({"id": session.cluster_id}, {"$inc": {f"context.{manager.context_id}.__version__": 1}})
    clock.advance(seconds=1)
    assert await manager.access(session)

    fresh = session.get_attribute("r")
    assert fresh == Recorder("one") and fresh is not old
    assert ("unbound", "r") in old.events
    assert fresh.events == [("bound", "r"), ("activate",)]


async def test_stop_invalidates_when_configured(make_manager, store, id_manager):
    manager = make_manager(invalidate_on_stop=True)
    await manager.start()
    session = await _fresh(manager)
    await manager.stop()

    doc = await store.find_one({"id": session.cluster_id})
    assert doc["valid"] is False
    assert len(manager) == 0
    assert await id_manager.known_ids() == set()


async def test_stop_preserves_unsaved_changes(make_manager, store):
    manager = make_manager(save_policy=SavePolicy.never)
    await manager.start()
    session = await manager.new_session()
    await session.set_attribute("a", 1)
    await manager.stop()

    doc = await store.find_one({"id": session.cluster_id})
    assert doc["valid"] is True
    assert ctx_doc(doc, manager.context_id)["a"] == 1


async def test_idle_sessions_leave_memory_but_stay_valid(make_manager, store, clock):
    manager = make_manager(idle_period=300, max_inactive_interval=1800)
    session = await _fresh(manager)

    clock.advance(seconds=400)
    await manager.evict_idle()
    assert manager.get_in_memory(session.cluster_id) is None
    assert await manager.id_manager.id_in_use(session.cluster_id)

    reloaded = await manager.get_session(session.cluster_id)
    assert reloaded is not None and reloaded is not session


async def test_expired_idle_sessions_are_invalidated(make_manager, store, clock):
    manager = make_manager(max_inactive_interval=60)
    session = await _fresh(manager)

    clock.advance(seconds=61)
    await manager.evict_idle()
    assert not session.is_valid
    doc = await store.find_one({"id": session.cluster_id})
    assert doc["valid"] is False


async def test_eviction_never_drops_a_session_being_acquired(make_manager, store, clock, id_manager):
    manager = make_manager(save_policy=SavePolicy.never, idle_period=300)
    session = await manager.new_session()
    await session.set_attribute("a", 1)
    await manager.complete(session)
    cid = session.cluster_id

    clock.advance(seconds=400)
    store.slow = True
    _, acquired = await asyncio.gather(manager.evict_idle(), manager.acquire(cid))

    assert acquired is not None
    assert acquired.active == 1
    assert acquired.get_attribute("a") == 1
    assert manager.get_in_memory(cid) is acquired
    assert cid in await id_manager.known_ids()


async def test_evicted_proxy_refuses_access(make_manager, clock):
    manager = make_manager(idle_period=300)
    session = await _fresh(manager)

    clock.advance(seconds=400)
    await manager.evict_idle()
    assert session.evicted
    assert await manager.access(session) is False
    assert session.is_valid

    reloaded = await manager.acquire(session.cluster_id)
    assert reloaded is not session and reloaded.active == 1


async def test_eviction_skips_sessions_in_use(make_manager, clock):
    manager = make_manager(idle_period=300, max_inactive_interval=60)
    session = await _fresh(manager)
    assert await manager.access(session)

    clock.advance(seconds=400)
    await manager.evict_idle()
    assert session.is_valid and not session.evicted
    assert manager.get_in_memory(session.cluster_id) is session

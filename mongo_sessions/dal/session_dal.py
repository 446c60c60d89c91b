# mongo_sessions/dal/session_dal.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Set

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from ..codec import AttributeCodec, encode_name
from ..db.store import DocumentStore
from ..errors import DecodingError, SessionError, StoreUnavailable
from ..models.session_record import (
    ACCESSED,
    CREATED,
    ID,
    INVALIDATED,
    VALID,
    VERSION,
    SessionRecord,
    as_utc,
    attribute_key,
    context_key,
    version_key,
)

if TYPE_CHECKING:
    from ..manager import SessionManager
    from ..session import Session

log = logging.getLogger(__name__)

__all__ = ["SessionStore", "ensure_indexes", "context_id_for"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def ensure_indexes(store: DocumentStore) -> None:
    await store.ensure_index([ID], unique=True, sparse=False)
    await store.ensure_index([ID, VERSION], unique=True, sparse=False)


def context_id_for(context_path: Optional[str], virtual_hosts: Optional[list] = None) -> str:
    """
    Namespace for one application inside the shared collection:
    first virtual host (``::`` when none) + context path (``*`` when empty),
    with path separators folded to ``_``.
    """
    host = virtual_hosts[0] if virtual_hosts else "::"
    path = context_path or "*"
    return (host + path).replace("/", "_").replace(".", "_").replace("\\", "_")


class SessionStore:
    """
    Maps Session proxies to session documents for one context.

    Store and codec failures never escape save/refresh/load_session: they are
    logged and reported as "no change" so sessions keep working from memory
    while the store is unavailable.
    """

    def __init__(
        self,
        store: DocumentStore,
        context_id: str,
        codec: Optional[AttributeCodec] = None,
        *,
        save_all_attributes: bool = False,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.context_id = context_id
        self.codec = codec or AttributeCodec()
        self.save_all_attributes = save_all_attributes
        self.clock = clock

    # ----------------- Write -----------------

    async def save(self, session: "Session", version: Optional[int], activate_after: bool) -> Optional[int]:
        """
        Write the session and return its new version.

        Returns None when the write failed (the caller keeps its token) and
        also after an invalidating save, which drops the context's version.
        """
        cid = session.cluster_id
        names: Set[str] = set()
        upsert = False
        sets: Dict[str, Any] = {}
        unsets: Dict[str, Any] = {}
        update: Dict[str, Any] = {}

        session.will_passivate()
        try:
            if not session.is_valid:
                key: Dict[str, Any] = {ID: cid}
                new_version = None
                sets[VALID] = False
                sets[INVALIDATED] = self.clock()
                unsets[context_key(self.context_id)] = 1
            else:
                names = session.take_dirty()
                if version is None:
                    # first write for this context; every attribute goes out
                    key = {ID: cid}
                    upsert = True
                    new_version = 1
                    update["$setOnInsert"] = {CREATED: session.created}
                    sets[VALID] = True
                    names |= set(session.names)
                else:
                    key = {ID: cid, VALID: True}
                    new_version = version + 1
                    if self.save_all_attributes:
                        names |= set(session.names)
                sets[version_key(self.context_id)] = new_version
                sets[ACCESSED] = session.accessed

                for name in names:
                    value = session.get_attribute(name)
                    path = attribute_key(self.context_id, encode_name(name))
                    if value is None:
                        unsets[path] = 1
                    else:
                        sets[path] = self.codec.encode_value(value)

            if sets:
                update["$set"] = sets
            if unsets:
                update["$unset"] = unsets

            res = await self.store.update(key, update, upsert=upsert)
            log.debug("save id=%s ctx=%s version=%s update=%s", cid, self.context_id, new_version, update)
            if not upsert and res.matched_count == 0:
                log.info("save id=%s ctx=%s matched no valid record", cid, self.context_id)
        except (SessionError, PyMongoError) as e:
            log.warning("save failed id=%s ctx=%s: %s", cid, self.context_id, e)
            if names:
                session.mark_dirty(names)
            if activate_after:
                session.did_activate()
            return None

        if activate_after:
            session.did_activate()
        return new_version

    async def remove(self, session: "Session") -> bool:
        """Drop this context's attributes for the session; True if the record existed."""
        try:
            res = await self.store.update(
                {ID: session.cluster_id},
                {"$unset": {context_key(self.context_id): 1}},
            )
        except (StoreUnavailable, PyMongoError) as e:
            log.warning("remove failed id=%s ctx=%s: %s", session.cluster_id, self.context_id, e)
            return False
        return res.matched_count > 0

    async def invalidate_session(self, cluster_id: str) -> bool:
        """Mark the record invalid regardless of any in-memory proxy. Idempotent."""
        try:
            res = await self.store.update(
                {ID: cluster_id, VALID: True},
                {"$set": {VALID: False, INVALIDATED: self.clock()}},
            )
        except (StoreUnavailable, PyMongoError) as e:
            log.warning("invalidate failed id=%s: %s", cluster_id, e)
            return False
        if res.matched_count:
            log.info("invalidated id=%s", cluster_id)
        return res.matched_count > 0

    # ----------------- Read -----------------

    async def refresh(self, session: "Session", version: Optional[int]) -> Optional[int]:
        """
        Bring the session up to date with the store.

        Returns the (possibly unchanged) version, or None once the session has
        been invalidated because its record is gone or marked invalid.
        """
        cid = session.cluster_id
        vkey = version_key(self.context_id)
        try:
            if version is not None:
                o = await self.store.find_one({ID: cid}, {vkey: 1, VALID: 1, ACCESSED: 1})
                if o is None or o.get(VALID) is not True:
                    return self._invalidated(session)
                if _get(o, vkey) == version:
                    session.observe_accessed(as_utc(o.get(ACCESSED)))
                    log.debug("refresh not needed id=%s version=%s", cid, version)
                    return version
            doc = await self.store.find_one({ID: cid})
        except StoreUnavailable as e:
            log.warning("refresh failed id=%s: %s", cid, e)
            return version

        if doc is None or doc.get(VALID) is not True:
            return self._invalidated(session)

        try:
            record = SessionRecord.from_doc(doc)
            attrs = self.codec.decode_attributes(record.attributes_for(self.context_id))
        except (DecodingError, ValidationError) as e:
            log.warning("refresh could not decode id=%s: %s", cid, e)
            return version

        # modelled as passivate, rebind every attribute, activate
        session.will_passivate()
        session.clear_attributes()
        for name, value in attrs.items():
            session.do_put_or_remove(name, value)
            session.bind_value(name, value)
        session.did_activate()
        session.observe_accessed(record.accessed)
        return record.version_for(self.context_id)

    def _invalidated(self, session: "Session") -> None:
        log.info("refresh found no valid record id=%s; invalidating", session.cluster_id)
        session.do_invalidate()
        return None

    async def load_session(self, cluster_id: str, manager: "SessionManager") -> Optional["Session"]:
        from ..session import Session

        try:
            doc = await self.store.find_one({ID: cluster_id})
        except StoreUnavailable as e:
            log.warning("load failed id=%s: %s", cluster_id, e)
            return None
        if doc is None or doc.get(VALID) is not True:
            return None

        try:
            record = SessionRecord.from_doc(doc)
            attrs = self.codec.decode_attributes(record.attributes_for(self.context_id))
        except (DecodingError, ValidationError) as e:
            log.warning("load could not decode id=%s: %s", cluster_id, e)
            return None

        session = Session(
            manager,
            created=record.created or self.clock(),
            accessed=record.accessed or record.created or self.clock(),
            cluster_id=cluster_id,
            version=record.version_for(self.context_id),
        )
        for name, value in attrs.items():
            session.do_put_or_remove(name, value)
            session.bind_value(name, value)
        session.did_activate()
        log.debug("loaded id=%s ctx=%s attrs=%s", cluster_id, self.context_id, list(attrs))
        return session


def _get(doc: Dict[str, Any], path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur

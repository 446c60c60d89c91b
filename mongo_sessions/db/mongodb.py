# mongo_sessions/db/mongodb.py
from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..errors import StoreUnavailable
from ..settings import settings
from .store import Document, DocumentStore, Filter, Projection, WriteResult

_client: AsyncIOMotorClient | None = None
_db: AsyncIOMotorDatabase | None = None


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        # tz_aware so accessed/created come back comparable with datetime.now(timezone.utc)
        _client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)
        _db = _client[settings.MONGO_DB]
    return _db


async def get_collection(name: str | None = None) -> AsyncIOMotorCollection:
    db = await get_db()
    return db[name or settings.COLLECTION]


async def close_db():
    global _client, _db
    if _client:
        _client.close()
        _client = None
        _db = None


class MotorDocumentStore(DocumentStore):
    """DocumentStore over a Motor collection; driver failures surface as StoreUnavailable."""

    def __init__(self, collection: AsyncIOMotorCollection):
        self.col = collection

    async def find_one(self, filter: Filter, projection: Projection = None) -> Optional[Document]:
        try:
            return await self.col.find_one(dict(filter), projection)
        except PyMongoError as e:
            raise StoreUnavailable(f"find_one failed: {e}") from e

    async def find(self, filter: Filter, projection: Projection = None) -> AsyncIterator[Document]:
        try:
            async for doc in self.col.find(dict(filter), projection):
                yield doc
        except PyMongoError as e:
            raise StoreUnavailable(f"find failed: {e}") from e

    async def update(
        self,
        filter: Filter,
        update: Mapping[str, Any],
        upsert: bool = False,
        multi: bool = False,
    ) -> WriteResult:
        try:
            if multi:
                res = await self.col.update_many(dict(filter), dict(update), upsert=upsert)
            else:
                res = await self.col.update_one(dict(filter), dict(update), upsert=upsert)
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            raise StoreUnavailable(f"update failed: {e}") from e
        return WriteResult(res.matched_count, res.modified_count, res.upserted_id)

    async def remove(self, filter: Filter) -> int:
        try:
            res = await self.col.delete_many(dict(filter))
        except PyMongoError as e:
            raise StoreUnavailable(f"remove failed: {e}") from e
        return res.deleted_count

    async def ensure_index(self, keys: Sequence[str], unique: bool = False, sparse: bool = False) -> None:
        try:
            await self.col.create_index([(k, ASCENDING) for k in keys], unique=unique, sparse=sparse)
        except PyMongoError as e:
            raise StoreUnavailable(f"create_index failed: {e}") from e

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

Document = Dict[str, Any]
Filter = Mapping[str, Any]
Projection = Optional[Mapping[str, Any]]


@dataclass(frozen=True)
class WriteResult:
    matched_count: int
    modified_count: int
    upserted_id: Any = None


class DocumentStore(ABC):
    """
    Minimal contract over one collection of session documents.

    Implementations must apply each update atomically per document; nothing
    here relies on multi-document transactions.
    """

    @abstractmethod
    async def find_one(self, filter: Filter, projection: Projection = None) -> Optional[Document]:
        ...

    @abstractmethod
    def find(self, filter: Filter, projection: Projection = None) -> AsyncIterator[Document]:
        ...

    @abstractmethod
    async def update(
        self,
        filter: Filter,
        update: Mapping[str, Any],
        upsert: bool = False,
        multi: bool = False,
    ) -> WriteResult:
        ...

    @abstractmethod
    async def remove(self, filter: Filter) -> int:
        ...

    @abstractmethod
    async def ensure_index(self, keys: Sequence[str], unique: bool = False, sparse: bool = False) -> None:
        """Create an ascending index on ``keys``. Safe to call repeatedly."""
        ...


# ----------------- In-memory implementation -----------------

_MISSING = object()


def _get_path(doc: Mapping[str, Any], path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


def _unset_path(doc: Dict[str, Any], path: str) -> bool:
    parts = path.split(".")
    cur: Any = doc
    for part in parts[:-1]:
        cur = cur.get(part) if isinstance(cur, dict) else None
        if cur is None:
            return False
    if isinstance(cur, dict) and parts[-1] in cur:
        del cur[parts[-1]]
        return True
    return False


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "$exists":
        return (actual is not _MISSING) == bool(expected)
    if op == "$ne":
        return actual is _MISSING or actual != expected
    if op == "$in":
        return actual is not _MISSING and actual in expected
    if op == "$nin":
        return actual is _MISSING or actual not in expected
    if actual is _MISSING or actual is None:
        return False
    try:
        if op == "$lt":
            return actual < expected
        if op == "$lte":
            return actual <= expected
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
    except TypeError:
        return False
    raise ValueError(f"unsupported query operator {op}")


def _matches(doc: Mapping[str, Any], filter: Filter) -> bool:
    for path, cond in filter.items():
        actual = _get_path(doc, path)
        if isinstance(cond, Mapping) and cond and all(k.startswith("$") for k in cond):
            if not all(_compare(op, actual, exp) for op, exp in cond.items()):
                return False
        elif actual is _MISSING or actual != cond:
            return False
    return True


def _project(doc: Document, projection: Projection) -> Document:
    if not projection:
        return copy.deepcopy(doc)
    out: Document = {"_id": doc["_id"]}
    for path, include in projection.items():
        if not include:
            continue
        value = _get_path(doc, path)
        if value is not _MISSING:
            _set_path(out, path, copy.deepcopy(value))
    return out


class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed store for development and tests.

    Understands the subset of the MongoDB query and update language the
    session layer uses. Counts calls per operation in ``calls``.
    """

    def __init__(self) -> None:
        self._docs: List[Document] = []
        self._indexes: Dict[Tuple[str, ...], bool] = {}  # keys -> sparse, unique indexes only
        self.calls: Counter = Counter()

    def __len__(self) -> int:
        return len(self._docs)

    async def find_one(self, filter: Filter, projection: Projection = None) -> Optional[Document]:
        self.calls["find_one"] += 1
        for doc in self._docs:
            if _matches(doc, filter):
                return _project(doc, projection)
        return None

    async def find(self, filter: Filter, projection: Projection = None) -> AsyncIterator[Document]:
        self.calls["find"] += 1
        # snapshot so callers may mutate the store while iterating
        for doc in [d for d in self._docs if _matches(d, filter)]:
            yield _project(doc, projection)

    async def update(
        self,
        filter: Filter,
        update: Mapping[str, Any],
        upsert: bool = False,
        multi: bool = False,
    ) -> WriteResult:
        self.calls["update"] += 1
        targets = [d for d in self._docs if _matches(d, filter)]
        if not multi:
            targets = targets[:1]

        if not targets:
            if not upsert:
                return WriteResult(0, 0)
            seed: Document = {"_id": ObjectId()}
            for path, cond in filter.items():
                if not (isinstance(cond, Mapping) and any(k.startswith("$") for k in cond)):
                    _set_path(seed, path, copy.deepcopy(cond))
            self._apply(seed, update, inserting=True)
            self._check_unique(seed, exclude=None)
            self._docs.append(seed)
            return WriteResult(0, 0, seed["_id"])

        modified = 0
        for doc in targets:
            candidate = copy.deepcopy(doc)
            self._apply(candidate, update)
            self._check_unique(candidate, exclude=doc)
            if candidate != doc:
                doc.clear()
                doc.update(candidate)
                modified += 1
        return WriteResult(len(targets), modified)

    async def remove(self, filter: Filter) -> int:
        self.calls["remove"] += 1
        keep = [d for d in self._docs if not _matches(d, filter)]
        removed = len(self._docs) - len(keep)
        self._docs = keep
        return removed

    async def ensure_index(self, keys: Sequence[str], unique: bool = False, sparse: bool = False) -> None:
        self.calls["ensure_index"] += 1
        if unique:
            self._indexes.setdefault(tuple(keys), sparse)

    # ----------------- Helpers -----------------

    @staticmethod
    def _apply(doc: Document, update: Mapping[str, Any], inserting: bool = False) -> None:
        for op, fields in update.items():
            if op == "$set" or (op == "$setOnInsert" and inserting):
                for path, value in fields.items():
                    _set_path(doc, path, copy.deepcopy(value))
            elif op == "$setOnInsert":
                continue
            elif op == "$unset":
                for path in fields:
                    _unset_path(doc, path)
            elif op == "$inc":
                for path, amount in fields.items():
                    current = _get_path(doc, path)
                    _set_path(doc, path, (0 if current is _MISSING else current) + amount)
            else:
                raise ValueError(f"unsupported update operator {op}")

    def _check_unique(self, candidate: Document, exclude: Optional[Document]) -> None:
        for keys, sparse in self._indexes.items():
            values = tuple(_get_path(candidate, k) for k in keys)
            if sparse and all(v is _MISSING for v in values):
                continue
            key = tuple(None if v is _MISSING else v for v in values)
            for other in self._docs:
                if other is exclude:
                    continue
                other_key = tuple(
                    None if v is _MISSING else v for v in (_get_path(other, k) for k in keys)
                )
                if other_key == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error index: {'_'.join(keys)} dup key: {key!r}",
                        code=11000,
                    )


__all__ = ["Document", "DocumentStore", "WriteResult", "InMemoryDocumentStore"]

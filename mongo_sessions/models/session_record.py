from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# --- Document field names -----------------------------------------------------

ID = "id"
VERSION = "version"        # top-level, only referenced by the (id, version) index
CREATED = "created"
ACCESSED = "accessed"
VALID = "valid"
INVALIDATED = "invalidated"
CONTEXT = "context"
CONTEXT_VERSION = "__version__"  # per-context counter, inside context.<contextId>


def context_key(context_id: str) -> str:
    return f"{CONTEXT}.{context_id}"


def version_key(context_id: str) -> str:
    return f"{CONTEXT}.{context_id}.{CONTEXT_VERSION}"


def attribute_key(context_id: str, encoded_name: str) -> str:
    return f"{CONTEXT}.{context_id}.{encoded_name}"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # documents read without tz_aware come back naive but are UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- DB view ------------------------------------------------------------------

class SessionRecord(BaseModel):
    """
    Read-side view of one session document.

    Attribute values under ``context`` are still in their stored (encoded) form;
    decoding is the codec's job.
    """
    model_config = ConfigDict(extra="ignore")

    id: str
    created: Optional[datetime] = None
    accessed: Optional[datetime] = None
    valid: bool = False
    invalidated: Optional[datetime] = None
    context: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "SessionRecord":
        rec = cls.model_validate(doc)
        rec.created = as_utc(rec.created)
        rec.accessed = as_utc(rec.accessed)
        rec.invalidated = as_utc(rec.invalidated)
        return rec

    def version_for(self, context_id: str) -> Optional[int]:
        return (self.context.get(context_id) or {}).get(CONTEXT_VERSION)

    def attributes_for(self, context_id: str) -> Dict[str, Any]:
        """Stored attributes for ``context_id``, names still encoded."""
        sub = self.context.get(context_id) or {}
        return {k: v for k, v in sub.items() if k != CONTEXT_VERSION}

"""
Attribute codec.

Session attribute values are stored inside the session document, under
``context.<contextId>.<encodedName>``. Each value falls into one of four kinds,
decided once by :meth:`AttributeCodec.classify`:

- SCALAR: None, bool, int (64-bit), float, str, bytes, datetime; stored as is,
  except that datetimes must be timezone-aware and are stored as UTC
  truncated to milliseconds, which is all a BSON date holds.
- NESTED_MAP: dict with str keys; stored as a sub-document, keys escaped.
- SEQUENCE: list; stored as an array, element by element.
- OPAQUE: an instance of a type registered in the :class:`SerializerRegistry`;
  stored as ``Binary(b"<type-name>\\0<payload>", subtype=OPAQUE_SUBTYPE)``.

Anything else is rejected with EncodingError. Nothing is pickled.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Type

from bson import Binary
from pydantic import BaseModel

from .errors import DecodingError, EncodingError
from .models.session_record import as_utc

OPAQUE_SUBTYPE = 0x80  # first user-defined BSON binary subtype

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1


class AttrKind(str, Enum):
    scalar = "scalar"
    nested_map = "nested_map"
    sequence = "sequence"
    opaque = "opaque"


def encode_name(name: str) -> str:
    # '.' separates nested field paths
    return name.replace("%", "%25").replace(".", "%2E")


def decode_name(name: str) -> str:
    return name.replace("%2E", ".").replace("%25", "%")


def _to_bson_date(value: datetime) -> datetime:
    utc = value.astimezone(timezone.utc)
    return utc.replace(microsecond=utc.microsecond - utc.microsecond % 1000)


# ----------------- Serializer registry -----------------

@dataclass(frozen=True)
class Serializer:
    cls: type
    name: str
    dump: Callable[[Any], bytes]
    load: Callable[[bytes], Any]


class SerializerRegistry:
    """Explicit serializer/deserializer pairs for attribute types that are not plain data."""

    def __init__(self) -> None:
        self._by_type: Dict[type, Serializer] = {}
        self._by_name: Dict[str, Serializer] = {}

    def register(
        self,
        cls: type,
        dump: Callable[[Any], bytes],
        load: Callable[[bytes], Any],
        name: Optional[str] = None,
    ) -> Serializer:
        name = name or f"{cls.__module__}.{cls.__qualname__}"
        if "\0" in name:
            raise ValueError("serializer name must not contain NUL")
        entry = Serializer(cls=cls, name=name, dump=dump, load=load)
        self._by_type[cls] = entry
        self._by_name[name] = entry
        return entry

    def register_model(self, model_cls: Type[BaseModel], name: Optional[str] = None) -> Serializer:
        """Register a pydantic model, stored as its JSON form."""
        return self.register(
            model_cls,
            dump=lambda m: m.model_dump_json().encode("utf-8"),
            load=model_cls.model_validate_json,
            name=name,
        )

    def for_value(self, value: Any) -> Optional[Serializer]:
        for klass in type(value).__mro__:
            entry = self._by_type.get(klass)
            if entry is not None:
                return entry
        return None

    def by_name(self, name: str) -> Optional[Serializer]:
        return self._by_name.get(name)


# ----------------- Codec -----------------

class AttributeCodec:
    def __init__(self, registry: Optional[SerializerRegistry] = None) -> None:
        self.registry = registry or SerializerRegistry()

    def classify(self, value: Any) -> AttrKind:
        if isinstance(value, datetime):
            if value.tzinfo is None or value.utcoffset() is None:
                raise EncodingError(value, "datetime must be timezone-aware")
            return AttrKind.scalar
        if value is None or isinstance(value, (bool, float, str, bytes)):
            return AttrKind.scalar
        if isinstance(value, int):
            if not _INT64_MIN <= value <= _INT64_MAX:
                raise EncodingError(value, "integer does not fit in 64 bits")
            return AttrKind.scalar
        if isinstance(value, dict):
            if not all(isinstance(k, str) for k in value):
                raise EncodingError(value, "map keys must be strings")
            return AttrKind.nested_map
        if isinstance(value, list):
            return AttrKind.sequence
        if self.registry.for_value(value) is not None:
            return AttrKind.opaque
        raise EncodingError(value, "no serializer registered")

    def encode_value(self, value: Any) -> Any:
        kind = self.classify(value)
        if kind is AttrKind.scalar:
            return _to_bson_date(value) if isinstance(value, datetime) else value
        if kind is AttrKind.nested_map:
            return {encode_name(k): self.encode_value(v) for k, v in value.items()}
        if kind is AttrKind.sequence:
            return [self.encode_value(v) for v in value]
        return self._encode_opaque(value)

    def decode_value(self, stored: Any) -> Any:
        if isinstance(stored, Binary) and stored.subtype == OPAQUE_SUBTYPE:
            return self._decode_opaque(bytes(stored))
        if isinstance(stored, datetime):
            return as_utc(stored)
        if stored is None or isinstance(stored, (bool, int, float, str)):
            return stored
        if isinstance(stored, bytes):
            return bytes(stored)
        if isinstance(stored, Mapping):
            return {decode_name(k): self.decode_value(v) for k, v in stored.items()}
        if isinstance(stored, list):
            return [self.decode_value(v) for v in stored]
        raise DecodingError(f"unexpected stored value of type {type(stored).__name__}")

    def encode_attributes(self, attributes: Mapping[str, Any]) -> Dict[str, Any]:
        return {encode_name(k): self.encode_value(v) for k, v in attributes.items()}

    def decode_attributes(self, stored: Mapping[str, Any]) -> Dict[str, Any]:
        return {decode_name(k): self.decode_value(v) for k, v in stored.items()}

    def _encode_opaque(self, value: Any) -> Binary:
        entry = self.registry.for_value(value)
        try:
            payload = entry.dump(value)
        except Exception as e:
            raise EncodingError(value, f"serializer {entry.name} failed: {e}") from e
        if not isinstance(payload, (bytes, bytearray)):
            raise EncodingError(value, f"serializer {entry.name} did not return bytes")
        return Binary(entry.name.encode("utf-8") + b"\0" + bytes(payload), OPAQUE_SUBTYPE)

    def _decode_opaque(self, blob: bytes) -> Any:
        name, sep, payload = blob.partition(b"\0")
        if not sep:
            raise DecodingError("opaque value has no type header")
        type_name = name.decode("utf-8", errors="replace")
        entry = self.registry.by_name(type_name)
        if entry is None:
            raise DecodingError(f"no serializer registered for {type_name}")
        try:
            return entry.load(payload)
        except Exception as e:
            raise DecodingError(f"serializer {type_name} failed to load: {e}") from e


__all__ = [
    "AttrKind",
    "AttributeCodec",
    "OPAQUE_SUBTYPE",
    "Serializer",
    "SerializerRegistry",
    "decode_name",
    "encode_name",
]

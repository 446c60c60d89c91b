from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
import bson
from bson import Binary
from bson.codec_options import CodecOptions
from pydantic import BaseModel

from mongo_sessions.codec import (
    OPAQUE_SUBTYPE,
    AttrKind,
    AttributeCodec,
    SerializerRegistry,
    decode_name,
    encode_name,
)
from mongo_sessions.errors import DecodingError, EncodingError


class Cart(BaseModel):
    owner: str
    items: list[str] = []


@dataclass
class Point:
    x: int
    y: int


def _point_registry() -> SerializerRegistry:
    reg = SerializerRegistry()
    reg.register(
        Point,
        dump=lambda p: f"{p.x},{p.y}".encode(),
        load=lambda b: Point(*map(int, b.decode().split(","))),
        name="geo.Point",
    )
    return reg


def test_encode_name_escapes_dots_and_percent():
    assert encode_name("a.b") == "a%2Eb"
    assert encode_name("50%") == "50%25"
    assert encode_name("plain") == "plain"


@pytest.mark.parametrize(
    "name",
    ["", "a.b", "%", "%2E", "%252E", "..", "a%2Eb.c", "%%..%%", "user.name%"],
)
def test_name_escaping_is_reversible(name):
    encoded = encode_name(name)
    assert "." not in encoded
    assert decode_name(encoded) == name


@pytest.mark.parametrize(
    "value",
    [
        None,
        True,
        42,
        -7,
        3.5,
        "hello",
        b"\x00\x01raw",
        datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc),
        {"a": 1, "b.c": {"d%e": "x"}},
        [1, "two", {"three": 3.0}],
        {},
    ],
)
def test_round_trip(value):
    codec = AttributeCodec()
    assert codec.decode_value(codec.encode_value(value)) == value


def test_nested_map_keys_are_escaped_in_storage():
    codec = AttributeCodec()
    assert codec.encode_value({"a.b": {"c.d": 1}}) == {"a%2Eb": {"c%2Ed": 1}}


def test_classify():
    codec = AttributeCodec(_point_registry())
    assert codec.classify("x") is AttrKind.scalar
    assert codec.classify({"k": 1}) is AttrKind.nested_map
    assert codec.classify([1]) is AttrKind.sequence
    assert codec.classify(Point(1, 2)) is AttrKind.opaque


def test_registered_type_is_stored_as_opaque_binary():
    codec = AttributeCodec(_point_registry())
    stored = codec.encode_value(Point(3, 4))
    assert isinstance(stored, Binary)
    assert stored.subtype == OPAQUE_SUBTYPE
    assert codec.decode_value(stored) == Point(3, 4)


def test_pydantic_model_round_trip_inside_map():
    reg = SerializerRegistry()
    reg.register_model(Cart)
    codec = AttributeCodec(reg)
    value = {"cart": Cart(owner="ann", items=["x", "y"]), "n": 2}
    assert codec.decode_value(codec.encode_value(value)) == value


def test_unregistered_object_is_rejected():
    with pytest.raises(EncodingError):
        AttributeCodec().encode_value(Point(1, 2))


def test_map_with_non_string_keys_is_rejected():
    with pytest.raises(EncodingError):
        AttributeCodec().encode_value({1: "a"})


def test_integer_beyond_64_bits_is_rejected():
    with pytest.raises(EncodingError):
        AttributeCodec().encode_value(2 ** 70)


def test_serializer_returning_non_bytes_is_an_encoding_error():
    reg = SerializerRegistry()
    reg.register(Point, dump=lambda p: (p.x, p.y), load=lambda b: None)
    with pytest.raises(EncodingError):
        AttributeCodec(reg).encode_value(Point(1, 1))


def test_unknown_stored_type_is_a_decoding_error():
    stored = AttributeCodec(_point_registry()).encode_value(Point(1, 2))
    with pytest.raises(DecodingError):
        AttributeCodec().decode_value(stored)


def test_failing_loader_is_a_decoding_error():
    reg = SerializerRegistry()
    reg.register(Point, dump=lambda p: b"garbage", load=lambda b: Point(*b.split(b",")), name="p")
    codec = AttributeCodec(reg)
    with pytest.raises(DecodingError):
        codec.decode_value(codec.encode_value(Point(1, 2)))


def test_blob_without_header_is_a_decoding_error():
    with pytest.raises(DecodingError):
        AttributeCodec().decode_value(Binary(b"no-header", OPAQUE_SUBTYPE))


def _through_bson(stored):
    raw = bson.encode({"v": stored})
    return bson.decode(raw, codec_options=CodecOptions(tz_aware=True))["v"]


def test_aware_datetime_survives_bson_in_any_zone():
    codec = AttributeCodec()
    value = datetime(2026, 3, 1, 8, 30, 15, 123000, tzinfo=timezone(timedelta(hours=-5)))
    decoded = codec.decode_value(_through_bson(codec.encode_value(value)))
    assert decoded == value
    assert decoded.utcoffset() == timedelta(0)


def test_datetime_is_stored_at_millisecond_precision():
    codec = AttributeCodec()
    value = datetime(2026, 3, 1, 8, 30, 15, 123456, tzinfo=timezone.utc)
    stored = codec.encode_value(value)
    assert stored.microsecond == 123000
    assert codec.decode_value(_through_bson(stored)) == stored


def test_datetimes_inside_maps_and_lists_survive_bson():
    codec = AttributeCodec()
    when = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)
    value = {"seen": [when], "at": when}
    assert codec.decode_value(_through_bson(codec.encode_value(value))) == value


def test_naive_datetime_is_rejected():
    with pytest.raises(EncodingError):
        AttributeCodec().encode_value(datetime(2026, 3, 1, 8, 30))
    with pytest.raises(EncodingError):
        AttributeCodec().encode_value({"at": datetime(2026, 3, 1, 8, 30)})

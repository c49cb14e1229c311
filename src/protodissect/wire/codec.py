"""Interpretation of raw wire values as protobuf scalar types."""

from __future__ import annotations

import struct
from typing import Dict, Optional

from protodissect.models import ScalarKind

from .cursor import WireType

# Wire type each scalar kind is encoded with when not packed.
EXPECTED_WIRE_TYPES: Dict[ScalarKind, WireType] = {
    ScalarKind.INT32: WireType.VARINT,
    ScalarKind.INT64: WireType.VARINT,
    ScalarKind.UINT32: WireType.VARINT,
    ScalarKind.UINT64: WireType.VARINT,
    ScalarKind.SINT32: WireType.VARINT,
    ScalarKind.SINT64: WireType.VARINT,
    ScalarKind.BOOL: WireType.VARINT,
    ScalarKind.FIXED64: WireType.FIXED64,
    ScalarKind.SFIXED64: WireType.FIXED64,
    ScalarKind.DOUBLE: WireType.FIXED64,
    ScalarKind.FIXED32: WireType.FIXED32,
    ScalarKind.SFIXED32: WireType.FIXED32,
    ScalarKind.FLOAT: WireType.FIXED32,
    ScalarKind.STRING: WireType.LENGTH_DELIMITED,
    ScalarKind.BYTES: WireType.LENGTH_DELIMITED,
}

_FIXED_FORMATS = {
    ScalarKind.FIXED32: "<I",
    ScalarKind.SFIXED32: "<i",
    ScalarKind.FLOAT: "<f",
    ScalarKind.FIXED64: "<Q",
    ScalarKind.SFIXED64: "<q",
    ScalarKind.DOUBLE: "<d",
}


def decode_zigzag(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


def to_signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    if value >> (bits - 1):
        return value - (1 << bits)
    return value


def decode_varint_scalar(kind: ScalarKind, raw: int):
    if kind is ScalarKind.INT32:
        return to_signed(raw, 32)
    if kind is ScalarKind.INT64:
        return to_signed(raw, 64)
    if kind is ScalarKind.UINT32:
        return raw & 0xFFFFFFFF
    if kind is ScalarKind.UINT64:
        return raw
    if kind is ScalarKind.SINT32:
        return decode_zigzag(raw & 0xFFFFFFFF)
    if kind is ScalarKind.SINT64:
        return decode_zigzag(raw)
    if kind is ScalarKind.BOOL:
        return raw != 0
    raise TypeError(f"{kind.value} is not a varint type")


def decode_fixed_scalar(kind: ScalarKind, raw: bytes):
    fmt = _FIXED_FORMATS.get(kind)
    if fmt is None:
        raise TypeError(f"{kind.value} is not a fixed-width type")
    return struct.unpack(fmt, raw)[0]


def varint_interpretations(raw: int) -> Dict[str, object]:
    return {"int64": to_signed(raw, 64), "sint64": decode_zigzag(raw)}


def fixed_interpretations(raw: bytes) -> Dict[str, object]:
    if len(raw) == 4:
        return {
            "uint32": struct.unpack("<I", raw)[0],
            "int32": struct.unpack("<i", raw)[0],
            "float": struct.unpack("<f", raw)[0],
        }
    return {
        "uint64": struct.unpack("<Q", raw)[0],
        "int64": struct.unpack("<q", raw)[0],
        "double": struct.unpack("<d", raw)[0],
    }


def as_printable_text(data: bytes) -> Optional[str]:
    """The payload as text if it is valid UTF-8 made of printable characters."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if all(ch.isprintable() or ch in "\r\n\t" for ch in text):
        return text
    return None

"""Bounded byte cursor over an in-memory protobuf payload."""

from __future__ import annotations

from enum import IntEnum
from typing import NamedTuple, Optional

from protodissect.errors import MalformedVarintError, TruncatedError

# A varint never needs more than 10 bytes to carry 64 bits.
MAX_VARINT_BYTES = 10
_UINT64_MASK = (1 << 64) - 1


class WireType(IntEnum):
    VARINT = 0
    FIXED64 = 1
    LENGTH_DELIMITED = 2
    START_GROUP = 3
    END_GROUP = 4
    FIXED32 = 5


def wire_type_name(wire_type: int) -> str:
    try:
        return WireType(wire_type).name
    except ValueError:
        return f"INVALID({wire_type})"


class Span(NamedTuple):
    """Absolute [start, end) offsets into the original buffer."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


class Cursor:
    """Reads protobuf primitives from `data[start:end]`.

    Positions are absolute offsets into `data`, so nodes decoded through
    child cursors can be highlighted in the original buffer. A read that
    fails leaves the position where that read began.
    """

    __slots__ = ("_data", "_start", "_end", "_pos")

    def __init__(self, data: bytes, start: int = 0, end: Optional[int] = None):
        self._data = data
        if end is None:
            end = len(data)
        if not 0 <= start <= end <= len(data):
            raise ValueError(f"Invalid cursor bounds [{start}, {end}) for {len(data)} bytes")
        self._start = start
        self._end = end
        self._pos = start

    @property
    def position(self) -> int:
        return self._pos

    @property
    def start(self) -> int:
        return self._start

    @property
    def end(self) -> int:
        return self._end

    @property
    def remaining(self) -> int:
        return self._end - self._pos

    def at_end(self) -> bool:
        return self._pos >= self._end

    def read_varint(self) -> int:
        pos = self._pos
        result = 0
        shift = 0
        for _ in range(MAX_VARINT_BYTES):
            if pos >= self._end:
                raise TruncatedError("Truncated varint", self._pos)
            byte = self._data[pos]
            pos += 1
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                self._pos = pos
                return result & _UINT64_MASK
            shift += 7
        raise MalformedVarintError("Varint longer than 10 bytes", self._pos)

    def read_bytes(self, count: int) -> bytes:
        if count < 0 or count > self.remaining:
            raise TruncatedError(
                f"Need {count} byte(s), only {self.remaining} remaining", self._pos
            )
        value = self._data[self._pos:self._pos + count]
        self._pos += count
        return bytes(value)

    def read_fixed32(self) -> bytes:
        return self.read_bytes(4)

    def read_fixed64(self) -> bytes:
        return self.read_bytes(8)

    def read_length_delimited(self) -> Span:
        """Read a varint length prefix, then skip over exactly that many bytes."""
        begin = self._pos
        length = self.read_varint()
        if length > self.remaining:
            remaining = self.remaining
            self._pos = begin
            raise TruncatedError(
                f"Length-delimited field declares {length} byte(s), only {remaining} remaining",
                begin,
            )
        span = Span(self._pos, self._pos + length)
        self._pos = span.end
        return span

    def sub_cursor(self, span: Span) -> Cursor:
        """A child cursor that can never read past `span`, itself inside this cursor."""
        if span.start < self._start or span.end > self._end or span.start > span.end:
            raise TruncatedError(
                f"Span [{span.start}, {span.end}) outside [{self._start}, {self._end})",
                span.start,
            )
        return Cursor(self._data, span.start, span.end)

    def bytes_of(self, span: Span) -> bytes:
        return bytes(self._data[span.start:span.end])

    def skip_to_end(self) -> None:
        self._pos = self._end

    def __repr__(self) -> str:
        return f"Cursor(position={self._pos}, start={self._start}, end={self._end})"

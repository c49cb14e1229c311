"""Exception taxonomy for schema loading and wire decoding."""

from __future__ import annotations

from typing import Optional


class ProtoDissectError(Exception):
    """Base class for every error raised by protodissect."""


class SchemaError(ProtoDissectError):
    """A problem in one schema file, reported with its source position."""

    def __init__(
        self,
        message: str,
        file_name: Optional[str] = None,
        line: Optional[int] = None,
        col: Optional[int] = None,
    ):
        self.message = message
        self.file_name = file_name
        self.line = line
        self.col = col
        super().__init__(self._format())

    def _format(self) -> str:
        text = self.message
        if self.line is not None:
            text = f"Line {self.line}:{self.col}: {text}"
        if self.file_name:
            text = f"{self.file_name}: {text}"
        return text


class LexError(SchemaError):
    """Raised on an unterminated literal/comment or an invalid character."""


class ParseError(SchemaError):
    """Raised when the parser encounters unexpected input."""


class SchemaReadError(SchemaError):
    """Raised when a schema file cannot be read from disk."""


class ResolutionError(SchemaError):
    """An unresolved type reference or a duplicate type name / field number."""

    def __init__(
        self,
        message: str,
        symbol: str = "",
        file_name: Optional[str] = None,
        line: Optional[int] = None,
        col: Optional[int] = None,
    ):
        self.symbol = symbol
        super().__init__(message, file_name, line, col)


class SchemaLoadError(ProtoDissectError):
    """Fatal load-time condition, e.g. no schema files at all."""


class TypeNotFound(ProtoDissectError, KeyError):
    """Raised by SchemaRegistry.lookup for an unknown type name."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class WireError(ProtoDissectError):
    """Base class for failures while reading the wire format."""

    def __init__(self, message: str, offset: Optional[int] = None):
        self.offset = offset
        if offset is not None:
            message = f"{message} at offset {offset}"
        super().__init__(message)


class TruncatedError(WireError):
    """Fewer bytes remain than the read requires."""


class MalformedVarintError(WireError):
    """A varint with more than 10 bytes carrying the continuation bit."""


class MaxDepthExceeded(WireError):
    """Nesting exceeded the configured maximum recursion depth."""

"""Decode Protocol Buffers payloads against .proto schemas."""

from protodissect.diagnostics import Diagnostic, DiagnosticCollector, Severity
from protodissect.dissector import DecodedField, DecodedTree, Dissector, FieldStatus, dissect
from protodissect.errors import (
    LexError,
    ParseError,
    ProtoDissectError,
    ResolutionError,
    SchemaError,
    SchemaLoadError,
    TypeNotFound,
    WireError,
)
from protodissect.loader import LoadResult, load_schema_sources, load_schemas
from protodissect.registry import SchemaRegistry

__all__ = [
    "DecodedField",
    "DecodedTree",
    "Diagnostic",
    "DiagnosticCollector",
    "Dissector",
    "FieldStatus",
    "LexError",
    "LoadResult",
    "ParseError",
    "ProtoDissectError",
    "ResolutionError",
    "SchemaError",
    "SchemaLoadError",
    "SchemaRegistry",
    "Severity",
    "TypeNotFound",
    "WireError",
    "dissect",
    "load_schema_sources",
    "load_schemas",
]

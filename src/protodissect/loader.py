"""Load schema files into a SchemaRegistry, collecting per-file problems."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from protodissect.diagnostics import Diagnostic, DiagnosticSink
from protodissect.errors import LexError, ParseError, SchemaError, SchemaLoadError, SchemaReadError
from protodissect.parser.proto_ast import ProtoFile
from protodissect.parser.proto_parser import parse_proto_file, parse_proto_text
from protodissect.registry import SchemaRegistry

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    registry: SchemaRegistry
    files: List[ProtoFile] = field(default_factory=list)
    errors: List[SchemaError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def load_schemas(paths: Sequence[str], sink: Optional[DiagnosticSink] = None) -> LoadResult:
    """Read, parse and resolve the given .proto files.

    A file that cannot be read, lexed or parsed is reported and skipped; the
    remaining files still load. Only an empty path list is fatal.
    """
    if not paths:
        raise SchemaLoadError("No .proto schema files to load")

    files: List[ProtoFile] = []
    errors: List[SchemaError] = []
    for path in paths:
        try:
            proto = parse_proto_file(str(path))
        except (OSError, UnicodeDecodeError) as exc:
            errors.append(SchemaReadError(f"Could not read schema file: {exc}", str(path)))
            continue
        except (LexError, ParseError) as exc:
            logger.debug("Failed to parse %s: %s", path, exc)
            errors.append(exc)
            continue
        _log_parsed(proto)
        files.append(proto)

    result = _resolve(files, errors)
    _report(result.errors, sink)
    return result


def load_schema_sources(
    sources: Iterable[Tuple[str, str]],
    sink: Optional[DiagnosticSink] = None,
) -> LoadResult:
    """Parse and resolve (file_name, text) pairs that are already in memory."""
    files: List[ProtoFile] = []
    errors: List[SchemaError] = []

    for file_name, text in sources:
        try:
            proto = parse_proto_text(text, file_name)
        except (LexError, ParseError) as exc:
            logger.debug("Failed to parse %s: %s", file_name, exc)
            errors.append(exc)
            continue
        _log_parsed(proto)
        files.append(proto)

    result = _resolve(files, errors)
    _report(result.errors, sink)
    return result


def _log_parsed(proto: ProtoFile) -> None:
    logger.info(
        "Parsed %s: %d message(s), %d enum(s)",
        proto.file_name,
        len(proto.messages),
        len(proto.enums),
    )


def _resolve(files: List[ProtoFile], errors: List[SchemaError]) -> LoadResult:
    registry, resolution_errors = SchemaRegistry.build(files)
    errors.extend(resolution_errors)
    return LoadResult(registry=registry, files=files, errors=errors)


def _report(errors: List[SchemaError], sink: Optional[DiagnosticSink]) -> None:
    if sink is None:
        return
    for error in errors:
        sink(Diagnostic.from_error(error))

"""Structured diagnostics handed to a host-supplied sink.

Schema problems (lex/parse/resolution errors) and per-field wire problems are
reported as :class:`Diagnostic` records instead of being raised, so a host can
collect them, log them, or show them next to the decoded tree.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from protodissect.errors import SchemaError, WireError

logger = logging.getLogger(__name__)


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    kind: str
    message: str
    file_name: Optional[str] = None
    line: Optional[int] = None
    col: Optional[int] = None
    offset: Optional[int] = None

    @classmethod
    def from_error(cls, error: Exception, severity: Severity = Severity.ERROR) -> Diagnostic:
        if isinstance(error, SchemaError):
            return cls(
                severity=severity,
                kind=type(error).__name__,
                message=error.message,
                file_name=error.file_name,
                line=error.line,
                col=error.col,
            )
        offset = error.offset if isinstance(error, WireError) else None
        return cls(severity=severity, kind=type(error).__name__, message=str(error), offset=offset)

    def __str__(self) -> str:
        where = ""
        if self.file_name:
            where = self.file_name
            if self.line is not None:
                where += f":{self.line}:{self.col}"
            where += ": "
        elif self.offset is not None:
            where = f"offset {self.offset}: "
        return f"{self.severity.value}: {where}{self.kind}: {self.message}"


DiagnosticSink = Callable[[Diagnostic], None]


class DiagnosticCollector:
    """A sink that keeps every diagnostic it receives, in order."""

    def __init__(self) -> None:
        self.diagnostics: List[Diagnostic] = []

    def __call__(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)

    def __len__(self) -> int:
        return len(self.diagnostics)

    def __iter__(self):
        return iter(self.diagnostics)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity is Severity.ERROR]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity is Severity.WARNING]

    def of_kind(self, kind: str) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]


def log_diagnostic(diagnostic: Diagnostic) -> None:
    """Default sink: forward to the logging module."""
    if diagnostic.severity is Severity.ERROR:
        logger.error("%s", diagnostic)
    else:
        logger.warning("%s", diagnostic)

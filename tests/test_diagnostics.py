import logging

from protodissect.diagnostics import Diagnostic, DiagnosticCollector, Severity, log_diagnostic
from protodissect.errors import ParseError, ResolutionError, TruncatedError, TypeNotFound


class TestErrorFormatting:
    def test_schema_error_position(self):
        err = ParseError("Expected SEMICOLON", "a.proto", 3, 14)
        assert str(err) == "a.proto: Line 3:14: Expected SEMICOLON"
        assert ParseError("oops").message == "oops"
        assert str(ParseError("oops")) == "oops"

    def test_resolution_error_symbol(self):
        err = ResolutionError("Unresolved type 'X'", symbol="X", file_name="b.proto", line=1, col=2)
        assert err.symbol == "X"
        assert str(err) == "b.proto: Line 1:2: Unresolved type 'X'"

    def test_wire_error_offset(self):
        err = TruncatedError("Truncated varint", 12)
        assert err.offset == 12
        assert str(err) == "Truncated varint at offset 12"

    def test_type_not_found_is_a_key_error(self):
        err = TypeNotFound("Unknown type 'x'")
        assert isinstance(err, KeyError)
        assert str(err) == "Unknown type 'x'"


class TestDiagnostic:
    def test_from_schema_error(self):
        diag = Diagnostic.from_error(ParseError("bad", "c.proto", 4, 1))
        assert (diag.kind, diag.file_name, diag.line, diag.col) == ("ParseError", "c.proto", 4, 1)
        assert str(diag) == "error: c.proto:4:1: ParseError: bad"

    def test_from_wire_error(self):
        diag = Diagnostic.from_error(TruncatedError("short", 3), Severity.WARNING)
        assert diag.offset == 3
        assert str(diag) == "warning: offset 3: TruncatedError: short at offset 3"

    def test_collector(self):
        sink = DiagnosticCollector()
        sink(Diagnostic(Severity.ERROR, "ParseError", "a"))
        sink(Diagnostic(Severity.WARNING, "OneofConflict", "b"))
        assert len(sink) == 2
        assert [d.message for d in sink.errors] == ["a"]
        assert [d.message for d in sink.warnings] == ["b"]
        assert sink.of_kind("OneofConflict")[0].message == "b"

    def test_log_diagnostic(self, caplog):
        with caplog.at_level(logging.WARNING, logger="protodissect.diagnostics"):
            log_diagnostic(Diagnostic(Severity.ERROR, "ParseError", "broken"))
            log_diagnostic(Diagnostic(Severity.WARNING, "MalformedField", "odd"))
        assert [r.levelno for r in caplog.records] == [logging.ERROR, logging.WARNING]
        assert "ParseError: broken" in caplog.records[0].getMessage()

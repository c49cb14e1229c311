from protodissect.dissector import DecodedField, Dissector, FieldStatus, dissect
from protodissect.loader import load_schema_sources
from protodissect.registry import SchemaRegistry
from protodissect.render import describe_field, render_registry_summary, render_tree

SCHEMA = """\
syntax = "proto3";
package r;
enum Mode { OFF = 0; ON = 1; }
message Point {
    int32 x = 1;
    Mode mode = 2;
    repeated int32 tags = 3;
    oneof label { string name = 4; }
}
service Plotter {
    rpc Draw (Point) returns (Point);
    rpc Follow (stream Point) returns (stream Point);
}
"""


def _registry():
    result = load_schema_sources([("r.proto", SCHEMA)])
    assert result.ok
    return result.registry


class TestDescribeField:
    def test_schema_field(self):
        tree = Dissector(_registry()).dissect(b"\x08\x2a", "r.Point")
        assert describe_field(tree[0]) == "#1 x (int32) VARINT = 42 @0+2"

    def test_unknown_field_shows_interpretations(self):
        tree = dissect(b"\x08\x2a")
        assert describe_field(tree[0]) == "#1 VARINT = 42 [int64=42, sint64=21] @0+2 <unknown-field>"

    def test_enum_and_packed(self):
        tree = Dissector(_registry()).dissect(b"\x10\x01\x1a\x02\x05\x06", "r.Point")
        assert describe_field(tree[0]) == "#2 mode (r.Mode) VARINT = ON (1) @0+2"
        assert describe_field(tree[1]) == "#3 tags (int32) LENGTH_DELIMITED = [5, 6] @2+4"

    def test_long_bytes_are_abbreviated(self):
        node = DecodedField(number=9, wire_type=2, offset=0, length=102, kind="bytes", value=b"\xff" * 100)
        text = describe_field(node)
        assert "ff" * 24 + "... (100 bytes)" in text

    def test_malformed_shows_error(self):
        tree = dissect(b"\x08\x96")
        text = describe_field(tree[0])
        assert "<malformed>" in text
        assert "(Truncated varint at offset 1)" in text


class TestRenderTree:
    def test_layout(self):
        data = b"\x08\x01\x12\x06\x08\x2a\x10\x02\x18\x03"
        tree = dissect(data)
        lines = render_tree(tree, title="capture #1").splitlines()
        assert lines[0] == "capture #1"
        assert lines[1] == "message <no schema>: 10 byte(s), ok"
        assert lines[2].startswith("  #1 VARINT = 1 ")
        assert lines[3].startswith("  #2 LENGTH_DELIMITED = message {3 field(s)}")
        assert lines[4].startswith("    #1 VARINT = 42 ")
        assert len(lines) == 7

    def test_without_title(self):
        text = render_tree(dissect(b""))
        assert text == "message <no schema>: 0 byte(s), ok\n"

    def test_status_in_header(self):
        text = render_tree(dissect(b"\x80"))
        assert text.splitlines()[0] == "message <no schema>: 1 byte(s), malformed (truncated field key)"


class TestRegistrySummary:
    def test_lists_messages_enums_services(self):
        text = render_registry_summary(_registry())
        assert "message r.Point\n" in text
        assert "  optional int32 x = 1\n" in text
        assert "  repeated int32 tags = 3 [packed]\n" in text
        assert "  optional string name = 4 (oneof label)\n" in text
        assert "enum r.Mode\n  OFF = 0\n  ON = 1\n" in text
        assert "service r.Plotter\n" in text
        assert "  rpc Draw (r.Point) returns (r.Point)\n" in text
        assert "  rpc Follow (stream r.Point) returns (stream r.Point)\n" in text

    def test_extensions_listed_under_extendee(self):
        result = load_schema_sources(
            [
                (
                    "x.proto",
                    """\
package x;
message Base { optional int32 id = 1; extensions 100 to 199; }
extend Base { optional string tag = 100; }
""",
                )
            ]
        )
        assert result.ok
        text = render_registry_summary(result.registry)
        assert "message x.Base\n  optional int32 id = 1\n  extend optional string x.tag = 100\n" in text

    def test_empty_registry(self):
        assert render_registry_summary(SchemaRegistry({}, {})).strip() == ""

    def test_field_status_values_are_stable(self):
        assert [s.value for s in FieldStatus] == [
            "ok", "unknown-field", "malformed", "max-depth-exceeded",
        ]

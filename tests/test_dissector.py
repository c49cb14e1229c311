import struct

import pytest

from protodissect.diagnostics import DiagnosticCollector
from protodissect.dissector import (
    DEFAULT_MAX_DEPTH,
    MAX_SUPPORTED_DEPTH,
    DecodedTree,
    Dissector,
    FieldStatus,
    dissect,
)
from protodissect.loader import load_schema_sources
from protodissect.wire.cursor import WireType

DEMO_SCHEMA = """\
syntax = "proto3";
package demo;

enum Color {
    RED = 0;
    GREEN = 1;
    BLUE = 2;
}

message Inner {
    int32 value = 1;
    string label = 2;
}

message Sample {
    int32 id = 1;
    string name = 2;
    Inner inner = 3;
    repeated int32 scores = 4;
    sint32 delta = 5;
    fixed32 flags = 6;
    double ratio = 7;
    Color color = 8;
    map<string, int32> counts = 9;
    oneof choice {
        string text = 10;
        int64 number = 11;
    }
    bool active = 12;
    bytes blob = 13;
    repeated Color palette = 14;
    float weight = 15;
    Missing ghost = 16;
    repeated string tags = 17;
}

message Node {
    int32 value = 1;
    Node child = 2;
}
"""

LEGACY_SCHEMA = """\
syntax = "proto2";
package legacy;

message Search {
    repeated group Result = 1 {
        required string url = 2;
    }
    optional int32 count = 3;
    extensions 100 to 199;
}

extend Search {
    optional int32 ext_val = 100;
}
"""


def _varint(value: int) -> bytes:
    value &= (1 << 64) - 1
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(number: int, wire_type: int) -> bytes:
    return _varint((number << 3) | wire_type)


def _vfield(number: int, value: int) -> bytes:
    return _key(number, WireType.VARINT) + _varint(value)


def _ldfield(number: int, payload: bytes) -> bytes:
    return _key(number, WireType.LENGTH_DELIMITED) + _varint(len(payload)) + payload


@pytest.fixture(scope="module")
def registry():
    result = load_schema_sources([("demo.proto", DEMO_SCHEMA), ("legacy.proto", LEGACY_SCHEMA)])
    # The only schema problem is the deliberately unresolved `Missing` type.
    assert [e.symbol for e in result.errors] == ["Missing"]
    return result.registry


@pytest.fixture
def dissector(registry):
    return Dissector(registry)


def _walk(tree: DecodedTree):
    for node in tree:
        yield tree, node
        if node.children is not None:
            yield from _walk(node.children)


class TestSchemaFree:
    def test_single_varint(self):
        tree = dissect(b"\x08\x2a")
        assert len(tree) == 1
        node = tree[0]
        assert node.number == 1
        assert node.wire_type == WireType.VARINT
        assert node.value == 42
        assert node.status is FieldStatus.UNKNOWN_FIELD
        assert node.interpretations == {"int64": 42, "sint64": 21}
        assert (node.offset, node.length) == (0, 2)
        assert tree.status is FieldStatus.OK

    def test_empty_payload(self):
        tree = dissect(b"")
        assert len(tree) == 0
        assert tree.status is FieldStatus.OK
        assert tree.length == 0

    def test_printable_payload_shown_as_string(self):
        node = dissect(_ldfield(1, b"hello"))[0]
        assert node.kind == "string"
        assert node.value == "hello"

    def test_nested_message_guess(self):
        node = dissect(_ldfield(1, b"\x08\x96\x01"))[0]
        assert node.kind == "message"
        assert node.children[0].value == 150
        assert node.children[0].offset == 2

    def test_message_with_leading_string_field_is_not_text(self):
        inner = _ldfield(1, b"x" * 40)
        assert inner[:2] == b"\n("
        node = dissect(_ldfield(3, inner))[0]
        assert node.kind == "message"
        assert node.children[0].kind == "string"
        assert node.children[0].value == "x" * 40

    def test_text_with_leading_newline_stays_text(self):
        node = dissect(_ldfield(1, b"\nhello world"))[0]
        assert node.kind == "string"
        assert node.value == "\nhello world"
        assert node.status is FieldStatus.UNKNOWN_FIELD

    def test_leading_newline_without_heuristics_is_text(self):
        inner = _ldfield(1, b"x" * 40)
        node = dissect(_ldfield(3, inner), heuristics=False)[0]
        assert node.kind == "string"

    def test_guess_rejects_garbage(self):
        sink = DiagnosticCollector()
        node = dissect(_ldfield(1, b"\xff\xfe"), sink=sink)[0]
        assert node.kind == "bytes"
        assert node.value == b"\xff\xfe"
        assert node.children is None
        assert len(sink) == 0

    def test_heuristics_disabled(self):
        node = dissect(_ldfield(1, b"\x08\x96\x01"), heuristics=False)[0]
        assert node.kind == "bytes"
        assert node.value == b"\x08\x96\x01"

    def test_fixed_widths(self):
        data = _key(1, WireType.FIXED32) + struct.pack("<f", 1.5)
        data += _key(2, WireType.FIXED64) + struct.pack("<d", -2.0)
        tree = dissect(data)
        assert tree[0].kind == "fixed32"
        assert tree[0].interpretations["float"] == 1.5
        assert tree[1].interpretations["double"] == -2.0
        assert tree[1].value_length == 8

    def test_group(self):
        data = _key(1, WireType.START_GROUP) + _vfield(2, 5) + _key(1, WireType.END_GROUP) + _vfield(3, 1)
        tree = dissect(data)
        assert [n.number for n in tree] == [1, 3]
        group = tree[0]
        assert group.kind == "group"
        assert group.children[0].value == 5
        assert group.length == 4
        assert group.status is FieldStatus.UNKNOWN_FIELD

    def test_unclosed_group(self):
        node = dissect(_key(1, WireType.START_GROUP) + _vfield(2, 5))[0]
        assert node.status is FieldStatus.MALFORMED
        assert "without matching end-group" in node.error

    def test_stray_end_group(self):
        tree = dissect(_key(1, WireType.END_GROUP) + _vfield(2, 1))
        assert tree[0].kind == "group-end"
        assert tree[0].status is FieldStatus.MALFORMED
        assert tree[1].value == 1

    def test_unknown_root_type_warns(self, registry):
        sink = DiagnosticCollector()
        tree = Dissector(registry, sink=sink).dissect(b"\x08\x01", "demo.Nope")
        assert tree.message_type is None
        assert tree[0].status is FieldStatus.UNKNOWN_FIELD
        assert sink.of_kind("TypeNotFound")[0].message.startswith("Message type 'demo.Nope'")


class TestScalarsWithSchema:
    def test_known_varint(self, dissector):
        tree = dissector.dissect(b"\x08\x2a", "demo.Sample")
        node = tree[0]
        assert tree.message_type == "demo.Sample"
        assert (node.name, node.type_name, node.kind, node.value) == ("id", "int32", "int32", 42)
        assert node.status is FieldStatus.OK
        assert node.interpretations == {}

    def test_negative_int32_uses_ten_bytes(self, dissector):
        data = _vfield(1, -5)
        assert len(data) == 11
        assert dissector.dissect(data, "demo.Sample")[0].value == -5

    def test_string_bytes_bool(self, dissector):
        data = _ldfield(2, "héllo".encode()) + _ldfield(13, b"\x00\x01") + _vfield(12, 1)
        tree = dissector.dissect(data, "demo.Sample")
        assert [n.value for n in tree] == ["héllo", b"\x00\x01", True]
        assert tree[0].value_offset == 2
        assert tree[0].value_length == 6

    def test_invalid_utf8_string(self, dissector):
        node = dissector.dissect(_ldfield(2, b"\xff"), "demo.Sample")[0]
        assert node.status is FieldStatus.MALFORMED
        assert node.value == b"\xff"

    def test_zigzag_and_fixed(self, dissector):
        data = _vfield(5, 5)
        data += _key(6, WireType.FIXED32) + struct.pack("<I", 0xDEADBEEF)
        data += _key(7, WireType.FIXED64) + struct.pack("<d", 2.5)
        data += _key(15, WireType.FIXED32) + struct.pack("<f", 0.5)
        tree = dissector.dissect(data, "demo.Sample")
        assert [n.value for n in tree] == [-3, 0xDEADBEEF, 2.5, 0.5]
        assert all(n.status is FieldStatus.OK for n in tree)

    def test_enum_names(self, dissector):
        tree = dissector.dissect(_vfield(8, 2) + _vfield(8, 7), "demo.Sample")
        assert (tree[0].value, tree[0].enum_name) == (2, "BLUE")
        assert (tree[1].value, tree[1].enum_name) == (7, None)
        assert tree[1].status is FieldStatus.OK

    def test_unknown_field_number(self, dissector):
        node = dissector.dissect(_vfield(99, 1), "demo.Sample")[0]
        assert node.status is FieldStatus.UNKNOWN_FIELD
        assert node.name is None
        assert node.value == 1

    def test_wire_type_mismatch(self, dissector):
        node = dissector.dissect(_ldfield(1, b"abc"), "demo.Sample")[0]
        assert node.name == "id"
        assert node.status is FieldStatus.UNKNOWN_FIELD
        assert "does not match declared type int32" in node.error
        assert node.value == "abc"

    def test_unresolved_field_type(self, dissector):
        node = dissector.dissect(_ldfield(16, b"\x08\x01"), "demo.Sample")[0]
        assert node.name == "ghost"
        assert node.status is FieldStatus.UNKNOWN_FIELD
        assert "Unresolved type 'Missing'" in node.error
        assert node.kind == "message"


class TestNestedAndRepeated:
    def test_sub_message(self, dissector):
        inner = _vfield(1, 7) + _ldfield(2, b"x")
        data = _vfield(1, 1) + _ldfield(3, inner)
        tree = dissector.dissect(data, "demo.Sample")
        node = tree[1]
        assert node.kind == "message"
        assert node.type_name == "demo.Inner"
        assert node.children.message_type == "demo.Inner"
        assert [c.name for c in node.children] == ["value", "label"]
        assert node.children[0].offset == node.value_offset
        assert node.end == len(data)

    def test_packed_repeated(self, dissector):
        payload = _varint(1) + _varint(2) + _varint(300) + _varint(-1)
        node = dissector.dissect(_ldfield(4, payload), "demo.Sample")[0]
        assert node.kind == "packed"
        assert node.value == [1, 2, 300, -1]
        assert [e.offset for e in node.elements] == [2, 3, 4, 6]
        assert node.elements[2].length == 2

    def test_unpacked_repeated(self, dissector):
        tree = dissector.dissect(_vfield(4, 1) + _vfield(4, 2), "demo.Sample")
        assert [n.value for n in tree.find(4)] == [1, 2]

    def test_packed_enum(self, dissector):
        node = dissector.dissect(_ldfield(14, b"\x01\x02"), "demo.Sample")[0]
        assert [e.enum_name for e in node.elements] == ["GREEN", "BLUE"]

    def test_truncated_packed_element(self, dissector):
        node = dissector.dissect(_ldfield(4, b"\x01\x96"), "demo.Sample")[0]
        assert node.status is FieldStatus.MALFORMED
        assert node.value == [1]

    def test_repeated_strings(self, dissector):
        tree = dissector.dissect(_ldfield(17, b"a") + _ldfield(17, b"b"), "demo.Sample")
        assert [n.value for n in tree] == ["a", "b"]

    def test_map_entries_keep_duplicates(self, dissector):
        data = _ldfield(9, _ldfield(1, b"a") + _vfield(2, 1))
        data += _ldfield(9, _ldfield(1, b"a") + _vfield(2, 2))
        tree = dissector.dissect(data, "demo.Sample")
        assert len(tree) == 2
        for node, expected in zip(tree, (1, 2)):
            assert node.kind == "map-entry"
            assert node.type_name == "map<string, int32>"
            key, value = node.children
            assert (key.name, key.value) == ("key", "a")
            assert (value.name, value.value) == ("value", expected)

    def test_oneof_conflict_is_reported(self, registry):
        sink = DiagnosticCollector()
        tree = Dissector(registry, sink=sink).dissect(_ldfield(10, b"hi") + _vfield(11, 5), "demo.Sample")
        assert [(n.name, n.oneof) for n in tree] == [("text", "choice"), ("number", "choice")]
        assert all(n.status is FieldStatus.OK for n in tree)
        conflicts = sink.of_kind("OneofConflict")
        assert len(conflicts) == 1
        assert "'text' and 'number'" in conflicts[0].message


class TestGroupsAndExtensions:
    def test_proto2_group(self, dissector):
        data = _key(1, WireType.START_GROUP) + _ldfield(2, b"http://x") + _key(1, WireType.END_GROUP)
        data += _vfield(3, 2)
        tree = dissector.dissect(data, "legacy.Search")
        group = tree[0]
        assert group.name == "result"
        assert group.status is FieldStatus.OK
        assert group.children.message_type == "legacy.Search.Result"
        assert (group.children[0].name, group.children[0].value) == ("url", "http://x")
        assert (tree[1].name, tree[1].value) == ("count", 2)

    def test_extension_field(self, dissector):
        node = dissector.dissect(_vfield(100, 7), "legacy.Search")[0]
        assert (node.name, node.value, node.status) == ("ext_val", 7, FieldStatus.OK)


class TestMalformedInput:
    def test_truncated_length(self, dissector):
        data = _vfield(1, 1) + _key(2, WireType.LENGTH_DELIMITED) + _varint(10) + b"abc"
        tree = dissector.dissect(data, "demo.Sample")
        assert tree[0].status is FieldStatus.OK
        bad = tree[1]
        assert bad.status is FieldStatus.MALFORMED
        assert bad.name == "name"
        assert bad.value == b"\x0aabc"
        assert bad.end == len(data)
        assert tree.status is FieldStatus.MALFORMED

    def test_truncated_varint_at_end(self):
        tree = dissect(b"\x08\x96")
        assert tree[0].status is FieldStatus.MALFORMED
        assert tree[0].end == 2
        assert tree.status is FieldStatus.MALFORMED

    def test_truncated_key(self):
        tree = dissect(b"\x80")
        assert tree.status is FieldStatus.MALFORMED
        assert tree.error == "truncated field key"

    def test_overlong_varint(self):
        tree = dissect(b"\x08" + b"\xff" * 10 + b"\x01")
        assert tree[0].status is FieldStatus.MALFORMED
        assert "longer than 10 bytes" in tree[0].error

    @pytest.mark.parametrize("data", [b"\x0f\x01", b"\x00\x01"])
    def test_invalid_keys(self, data):
        tree = dissect(data)
        assert tree.status is FieldStatus.MALFORMED
        assert tree[0].error.startswith("Invalid field key")

    def test_malformed_sub_message_does_not_hide_siblings(self, registry):
        sink = DiagnosticCollector()
        data = _ldfield(3, b"\x08") + _vfield(1, 9)
        tree = Dissector(registry, sink=sink).dissect(data, "demo.Sample")
        assert tree[0].status is FieldStatus.MALFORMED
        assert tree[0].children[0].status is FieldStatus.MALFORMED
        assert (tree[1].name, tree[1].value, tree[1].status) == ("id", 9, FieldStatus.OK)
        assert tree.status is FieldStatus.OK
        assert len(sink.of_kind("MalformedField")) == 1

    def test_spans_are_contained(self, dissector):
        inner = _vfield(1, 7) + _ldfield(2, b"label")
        data = _ldfield(3, inner) + _ldfield(4, b"\x01\x02") + _vfield(99, 3) + _key(2, 2) + b"\x09"
        tree = dissector.dissect(data, "demo.Sample")
        for parent, node in _walk(tree):
            assert parent.offset <= node.offset
            assert node.end <= parent.offset + parent.length
            assert node.value_offset >= node.offset
            assert node.value_offset + node.value_length <= node.end
        assert tree.length == len(data)


class TestDepthLimit:
    @staticmethod
    def _chain(levels: int) -> bytes:
        payload = _vfield(1, 0)
        for level in range(1, levels + 1):
            payload = _vfield(1, level) + _ldfield(2, payload)
        return payload

    def test_max_depth_marks_node(self, registry):
        sink = DiagnosticCollector()
        tree = Dissector(registry, max_depth=2, sink=sink).dissect(self._chain(5), "demo.Node")
        level1 = tree[1].children
        level2 = level1[1].children
        cut = level2[1]
        assert cut.status is FieldStatus.MAX_DEPTH_EXCEEDED
        assert cut.children is None
        assert isinstance(cut.value, bytes)
        assert level2[0].value == 3
        assert len(sink.of_kind("MaxDepthExceeded")) == 1

    def test_deep_schema_free_nesting_does_not_overflow(self):
        payload = b"\x08\x01"
        for _ in range(2000):
            payload = _ldfield(1, payload)
        sink = DiagnosticCollector()
        tree = dissect(payload, sink=sink)
        depth = 0
        node = tree[0]
        while node.children is not None:
            assert node.kind == "message"
            depth += 1
            node = node.children[0]
        assert depth == DEFAULT_MAX_DEPTH
        assert node.status is FieldStatus.MAX_DEPTH_EXCEEDED
        assert isinstance(node.value, bytes)
        assert len(sink.of_kind("MaxDepthExceeded")) == 1

    def test_schema_free_boundary_is_marked(self):
        payload = b"\x08\x01"
        for _ in range(10):
            payload = _ldfield(1, payload)
        tree = dissect(payload, max_depth=3)
        chain = []
        node = tree[0]
        while True:
            chain.append((node.status, node.kind))
            if node.children is None:
                break
            node = node.children[0]
        assert chain == [(FieldStatus.UNKNOWN_FIELD, "message")] * 3 + [
            (FieldStatus.MAX_DEPTH_EXCEEDED, "bytes")
        ]

    def test_largest_max_depth_does_not_overflow(self, registry):
        payload = _vfield(1, 0)
        for level in range(1, 3 * MAX_SUPPORTED_DEPTH):
            payload = _vfield(1, level) + _ldfield(2, payload)
        sink = DiagnosticCollector()
        tree = Dissector(registry, max_depth=MAX_SUPPORTED_DEPTH, sink=sink).dissect(
            payload, "demo.Node"
        )
        node = tree[1]
        for _ in range(MAX_SUPPORTED_DEPTH):
            node = node.children[1]
        assert node.status is FieldStatus.MAX_DEPTH_EXCEEDED
        assert len(sink.of_kind("MaxDepthExceeded")) == 1

        schema_free = dissect(payload, max_depth=MAX_SUPPORTED_DEPTH)
        assert schema_free.status is FieldStatus.OK

    @pytest.mark.parametrize("max_depth", [MAX_SUPPORTED_DEPTH + 1, 250, 1000])
    def test_max_depth_above_supported_rejected(self, max_depth):
        with pytest.raises(ValueError, match="max_depth must be between 0 and"):
            Dissector(max_depth=max_depth)

    def test_deep_groups_are_skipped_iteratively(self):
        data = _key(1, WireType.START_GROUP) * 3000 + _key(1, WireType.END_GROUP) * 3000
        tree = dissect(data, max_depth=4)
        assert tree.length == len(data)
        node = tree[0]
        for _ in range(4):
            node = node.children[0]
        assert node.status is FieldStatus.MAX_DEPTH_EXCEEDED

    def test_negative_max_depth_rejected(self):
        with pytest.raises(ValueError):
            Dissector(max_depth=-1)


class TestDeterminism:
    def test_repeat_dissection_is_identical(self, dissector):
        data = _vfield(1, 5) + _ldfield(3, _vfield(1, 1)) + _ldfield(4, b"\x01\x02") + _vfield(99, 1)
        first = dissector.dissect(data, "demo.Sample").to_dict()
        second = dissector.dissect(data, "demo.Sample").to_dict()
        assert first == second

    def test_to_dict_shape(self, dissector):
        tree = dissector.dissect(_vfield(8, 1) + _ldfield(3, _vfield(1, 2)), "demo.Sample")
        as_dict = tree.to_dict()
        assert as_dict["message_type"] == "demo.Sample"
        color, inner = as_dict["fields"]
        assert color["enum_name"] == "GREEN"
        assert color["wire_type"] == "VARINT"
        assert inner["children"]["fields"][0]["value"] == 2
        assert "value" not in inner

"""Wire-format dissection engine.

Walks a payload field by field, guided by a MessageDescriptor when one is
known and by the wire types alone when it is not. Problems in the bytes never
escape as exceptions: they degrade the status of the smallest enclosing node
(see FieldStatus) and decoding continues wherever the framing allows.

Schema-free decoding of length-delimited fields is a heuristic. Printable
UTF-8 is shown as a string, anything that decodes cleanly as a message is
shown as one, and the rest stays raw bytes. A payload starting with a tab,
newline or carriage return is tried as a message before it is tried as text.
Treat that output as a display aid, not as ground truth.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from protodissect.diagnostics import Diagnostic, DiagnosticSink, Severity
from protodissect.errors import MaxDepthExceeded, WireError
from protodissect.models import (
    EnumType,
    FieldDescriptor,
    GroupType,
    MapType,
    MessageDescriptor,
    MessageType,
    ScalarKind,
    ScalarType,
    UnresolvedType,
)
from protodissect.registry import SchemaRegistry
from protodissect.wire.codec import (
    EXPECTED_WIRE_TYPES,
    as_printable_text,
    decode_fixed_scalar,
    decode_varint_scalar,
    fixed_interpretations,
    to_signed,
    varint_interpretations,
)
from protodissect.wire.cursor import Cursor, Span, WireType, wire_type_name

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 32
# Upper bound for max_depth. Every nesting level costs a few interpreter
# frames and the whole walk must fit under the default recursion limit.
MAX_SUPPORTED_DEPTH = 100


def check_max_depth(max_depth: int) -> int:
    if not 0 <= max_depth <= MAX_SUPPORTED_DEPTH:
        raise ValueError(f"max_depth must be between 0 and {MAX_SUPPORTED_DEPTH}, got {max_depth}")
    return max_depth


class FieldStatus(Enum):
    OK = "ok"
    UNKNOWN_FIELD = "unknown-field"
    MALFORMED = "malformed"
    MAX_DEPTH_EXCEEDED = "max-depth-exceeded"


@dataclass
class DecodedField:
    """One field occurrence on the wire. Offsets are into the original buffer."""

    number: int
    wire_type: int
    offset: int
    length: int = 0
    value_offset: int = 0
    value_length: int = 0
    status: FieldStatus = FieldStatus.OK
    name: Optional[str] = None
    type_name: Optional[str] = None
    kind: str = ""
    value: object = None
    enum_name: Optional[str] = None
    children: Optional[DecodedTree] = None
    elements: List[DecodedField] = field(default_factory=list)
    interpretations: Dict[str, object] = field(default_factory=dict)
    oneof: Optional[str] = None
    error: Optional[str] = None

    @property
    def wire_type_name(self) -> str:
        return wire_type_name(self.wire_type)

    @property
    def end(self) -> int:
        return self.offset + self.length

    def to_dict(self) -> Dict[str, object]:
        result: Dict[str, object] = {
            "number": self.number,
            "wire_type": self.wire_type_name,
            "offset": self.offset,
            "length": self.length,
            "status": self.status.value,
            "kind": self.kind,
        }
        if self.name is not None:
            result["name"] = self.name
            result["type"] = self.type_name
        if self.oneof is not None:
            result["oneof"] = self.oneof
        if self.children is not None:
            result["children"] = self.children.to_dict()
        elif self.elements:
            result["elements"] = [e.to_dict() for e in self.elements]
        else:
            result["value"] = self.value
        if self.enum_name is not None:
            result["enum_name"] = self.enum_name
        if self.interpretations:
            result["interpretations"] = dict(self.interpretations)
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class DecodedTree:
    """The ordered field nodes of one (sub-)message."""

    fields: List[DecodedField] = field(default_factory=list)
    message_type: Optional[str] = None
    offset: int = 0
    length: int = 0
    status: FieldStatus = FieldStatus.OK
    error: Optional[str] = None

    def __iter__(self) -> Iterator[DecodedField]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def __getitem__(self, index: int) -> DecodedField:
        return self.fields[index]

    def find(self, number: int) -> List[DecodedField]:
        """Every occurrence of a field number, in wire order."""
        return [f for f in self.fields if f.number == number]

    def to_dict(self) -> Dict[str, object]:
        return {
            "message_type": self.message_type,
            "offset": self.offset,
            "length": self.length,
            "status": self.status.value,
            "error": self.error,
            "fields": [f.to_dict() for f in self.fields],
        }


class Dissector:
    """Decodes payloads against a (possibly empty) SchemaRegistry.

    The dissector keeps no per-call state, so one instance may serve any
    number of threads sharing the same immutable registry.
    """

    def __init__(
        self,
        registry: Optional[SchemaRegistry] = None,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        heuristics: bool = True,
        sink: Optional[DiagnosticSink] = None,
    ):
        check_max_depth(max_depth)
        self._registry = registry if registry is not None else SchemaRegistry({}, {})
        self._max_depth = max_depth
        self._heuristics = heuristics
        self._sink = sink

    @property
    def registry(self) -> SchemaRegistry:
        return self._registry

    @property
    def max_depth(self) -> int:
        return self._max_depth

    # -- public API --

    def dissect(self, data: bytes, root_type: Optional[str] = None) -> DecodedTree:
        """Decode a whole payload, optionally as message type `root_type`."""
        descriptor = None
        if root_type:
            descriptor = self._registry.find_message(root_type)
            if descriptor is None:
                logger.debug("Root type %r not in registry; decoding without schema", root_type)
                self._emit(
                    Severity.WARNING,
                    "TypeNotFound",
                    f"Message type {root_type!r} not found; decoding without schema",
                )
        tree = self.dissect_message(Cursor(bytes(data)), descriptor)
        self._report_tree(tree)
        return tree

    def dissect_message(
        self,
        cursor: Cursor,
        descriptor: Optional[MessageDescriptor] = None,
        depth: int = 0,
    ) -> DecodedTree:
        """Decode every field between the cursor position and its end."""
        tree, _ = self._decode_fields(cursor, descriptor, depth)
        return tree

    # -- field loop --

    def _decode_fields(
        self,
        cursor: Cursor,
        descriptor: Optional[MessageDescriptor],
        depth: int,
        group_number: Optional[int] = None,
    ) -> Tuple[DecodedTree, bool]:
        """Decode fields until the cursor ends (or the matching end-group marker).

        Returns the tree and whether the end-group marker for `group_number`
        was found.
        """
        if depth > self._max_depth:
            raise MaxDepthExceeded(f"Nesting deeper than {self._max_depth} levels", cursor.position)

        tree = DecodedTree(
            message_type=descriptor.full_name if descriptor else None,
            offset=cursor.position,
        )
        closed = False

        while not cursor.at_end():
            start = cursor.position
            try:
                key = cursor.read_varint()
            except WireError as exc:
                node = self._malformed_rest(cursor, start, 0, 0, f"Truncated field key: {exc}")
                tree.fields.append(node)
                tree.status = FieldStatus.MALFORMED
                tree.error = "truncated field key"
                break

            number, wire_type = key >> 3, key & 0x7
            if number == 0 or wire_type > WireType.FIXED32:
                node = self._malformed_rest(
                    cursor, start, number, wire_type, f"Invalid field key 0x{key:x}"
                )
                tree.fields.append(node)
                tree.status = FieldStatus.MALFORMED
                tree.error = node.error
                break

            if wire_type == WireType.END_GROUP:
                if number == group_number:
                    closed = True
                    break
                tree.fields.append(
                    DecodedField(
                        number=number,
                        wire_type=wire_type,
                        offset=start,
                        length=cursor.position - start,
                        value_offset=cursor.position,
                        status=FieldStatus.MALFORMED,
                        kind="group-end",
                        error="End-group marker without matching start-group",
                    )
                )
                continue

            fd = self._field_descriptor(descriptor, number)
            try:
                node = self._decode_field(cursor, start, number, wire_type, fd, depth)
            except WireError as exc:
                # The value itself is unreadable, so nothing after it can be framed.
                node = self._malformed_rest(cursor, start, number, wire_type, str(exc), fd)
                tree.fields.append(node)
                tree.status = FieldStatus.MALFORMED
                tree.error = node.error
                break
            tree.fields.append(node)

        tree.length = cursor.position - tree.offset
        return tree, closed

    def _field_descriptor(
        self, descriptor: Optional[MessageDescriptor], number: int
    ) -> Optional[FieldDescriptor]:
        if descriptor is None:
            return None
        fd = descriptor.field_by_number(number)
        if fd is None:
            fd = self._registry.find_extension(descriptor.full_name, number)
        return fd

    def _malformed_rest(
        self,
        cursor: Cursor,
        start: int,
        number: int,
        wire_type: int,
        message: str,
        fd: Optional[FieldDescriptor] = None,
    ) -> DecodedField:
        """A malformed node swallowing everything from `start` to the cursor end."""
        value_start = cursor.position
        node = DecodedField(number=number, wire_type=wire_type, offset=start)
        self._apply_descriptor(node, fd)
        node.status = FieldStatus.MALFORMED
        node.error = message
        node.kind = "raw"
        node.value = cursor.bytes_of(Span(value_start, cursor.end))
        node.value_offset = value_start
        node.value_length = cursor.end - value_start
        cursor.skip_to_end()
        node.length = cursor.position - start
        return node

    def _apply_descriptor(self, node: DecodedField, fd: Optional[FieldDescriptor]) -> None:
        if fd is None:
            node.status = FieldStatus.UNKNOWN_FIELD
            return
        node.name = fd.name
        node.type_name = fd.type_name
        node.oneof = fd.oneof
        if isinstance(fd.type, UnresolvedType):
            node.status = FieldStatus.UNKNOWN_FIELD
            node.error = f"Unresolved type {fd.type.name!r}"

    # -- single field --

    def _decode_field(
        self,
        cursor: Cursor,
        start: int,
        number: int,
        wire_type: int,
        fd: Optional[FieldDescriptor],
        depth: int,
    ) -> DecodedField:
        node = DecodedField(
            number=number, wire_type=wire_type, offset=start, value_offset=cursor.position
        )
        self._apply_descriptor(node, fd)

        if wire_type == WireType.VARINT:
            self._interpret_varint(node, cursor.read_varint(), fd)
        elif wire_type == WireType.FIXED64:
            self._interpret_fixed(node, cursor.read_fixed64(), fd)
        elif wire_type == WireType.FIXED32:
            self._interpret_fixed(node, cursor.read_fixed32(), fd)
        elif wire_type == WireType.LENGTH_DELIMITED:
            span = cursor.read_length_delimited()
            node.value_offset = span.start
            self._interpret_length_delimited(node, cursor, span, fd, depth)
        else:
            self._decode_group(node, cursor, number, fd, depth)

        node.length = cursor.position - start
        node.value_length = cursor.position - node.value_offset
        return node

    def _wire_mismatch(self, node: DecodedField, fd: Optional[FieldDescriptor]) -> None:
        """Declared type disagrees with the wire type: treat it as unknown."""
        if fd is None or isinstance(fd.type, UnresolvedType):
            return
        node.status = FieldStatus.UNKNOWN_FIELD
        node.error = (
            f"Wire type {wire_type_name(node.wire_type)} does not match declared type {fd.type_name}"
        )

    def _interpret_varint(self, node: DecodedField, raw: int, fd: Optional[FieldDescriptor]) -> None:
        field_type = fd.type if fd is not None else None
        if isinstance(field_type, ScalarType) and EXPECTED_WIRE_TYPES[field_type.kind] == WireType.VARINT:
            node.kind = field_type.kind.value
            node.value = decode_varint_scalar(field_type.kind, raw)
        elif isinstance(field_type, EnumType):
            node.kind = "enum"
            node.value = to_signed(raw, 32)
            node.enum_name = self._enum_name(field_type, node.value)
        else:
            self._wire_mismatch(node, fd)
            node.kind = "varint"
            node.value = raw
            node.interpretations = varint_interpretations(raw)

    def _interpret_fixed(self, node: DecodedField, raw: bytes, fd: Optional[FieldDescriptor]) -> None:
        field_type = fd.type if fd is not None else None
        if isinstance(field_type, ScalarType) and EXPECTED_WIRE_TYPES[field_type.kind] == node.wire_type:
            node.kind = field_type.kind.value
            node.value = decode_fixed_scalar(field_type.kind, raw)
        else:
            self._wire_mismatch(node, fd)
            node.kind = "fixed32" if len(raw) == 4 else "fixed64"
            node.value = raw
            node.interpretations = fixed_interpretations(raw)

    def _interpret_length_delimited(
        self,
        node: DecodedField,
        cursor: Cursor,
        span: Span,
        fd: Optional[FieldDescriptor],
        depth: int,
    ) -> None:
        field_type = fd.type if fd is not None else None

        if isinstance(field_type, MessageType):
            node.kind = "message"
            self._decode_submessage(
                node, cursor, span, self._registry.find_message(field_type.full_name), depth
            )
        elif isinstance(field_type, MapType):
            node.kind = "map-entry"
            self._decode_submessage(
                node, cursor, span, self._registry.find_message(field_type.entry_name), depth
            )
        elif isinstance(field_type, ScalarType) and field_type.kind is ScalarKind.STRING:
            node.kind = "string"
            data = cursor.bytes_of(span)
            try:
                node.value = data.decode("utf-8")
            except UnicodeDecodeError:
                node.value = data
                node.status = FieldStatus.MALFORMED
                node.error = "Invalid UTF-8 in string field"
        elif isinstance(field_type, ScalarType) and field_type.kind is ScalarKind.BYTES:
            node.kind = "bytes"
            node.value = cursor.bytes_of(span)
        elif isinstance(field_type, (ScalarType, EnumType)) and fd.is_repeated:
            self._decode_packed(node, cursor, span, field_type)
        else:
            self._wire_mismatch(node, fd)
            self._guess_length_delimited(node, cursor, span, depth)

    def _decode_submessage(
        self,
        node: DecodedField,
        cursor: Cursor,
        span: Span,
        descriptor: Optional[MessageDescriptor],
        depth: int,
    ) -> None:
        try:
            child, _ = self._decode_fields(cursor.sub_cursor(span), descriptor, depth + 1)
        except MaxDepthExceeded as exc:
            node.status = FieldStatus.MAX_DEPTH_EXCEEDED
            node.error = str(exc)
            node.value = cursor.bytes_of(span)
            return
        node.children = child
        if child.status is FieldStatus.MALFORMED:
            node.status = FieldStatus.MALFORMED
            node.error = f"Malformed sub-message: {child.error}"

    def _decode_packed(
        self,
        node: DecodedField,
        cursor: Cursor,
        span: Span,
        field_type,
    ) -> None:
        node.kind = "packed"
        kind = field_type.kind if isinstance(field_type, ScalarType) else None
        element_wire_type = EXPECTED_WIRE_TYPES[kind] if kind is not None else WireType.VARINT
        sub = cursor.sub_cursor(span)
        values = []

        while not sub.at_end():
            el_start = sub.position
            try:
                if element_wire_type == WireType.VARINT:
                    raw = sub.read_varint()
                elif element_wire_type == WireType.FIXED32:
                    raw = sub.read_fixed32()
                else:
                    raw = sub.read_fixed64()
            except WireError as exc:
                node.status = FieldStatus.MALFORMED
                node.error = f"Truncated packed element: {exc}"
                break

            element = DecodedField(
                number=node.number,
                wire_type=element_wire_type,
                offset=el_start,
                length=sub.position - el_start,
                value_offset=el_start,
                value_length=sub.position - el_start,
                status=node.status,
                name=node.name,
                type_name=node.type_name,
            )
            if kind is None:
                element.kind = "enum"
                element.value = to_signed(raw, 32)
                element.enum_name = self._enum_name(field_type, element.value)
            elif element_wire_type == WireType.VARINT:
                element.kind = kind.value
                element.value = decode_varint_scalar(kind, raw)
            else:
                element.kind = kind.value
                element.value = decode_fixed_scalar(kind, raw)
            node.elements.append(element)
            values.append(element.value)

        node.value = values

    def _guess_length_delimited(
        self, node: DecodedField, cursor: Cursor, span: Span, depth: int
    ) -> None:
        """Schema-free display of a length-delimited payload (best effort)."""
        data = cursor.bytes_of(span)
        node.kind = "bytes"
        node.value = data
        if not data:
            return

        # Tab, newline and carriage return are also keys for field 1.
        message_first = self._heuristics and data[:1] in (b"\t", b"\n", b"\r")
        if message_first and self._guess_message(node, cursor, span, depth):
            return

        text = as_printable_text(data)
        if text is not None:
            node.kind = "string"
            node.value = text
            return
        if self._heuristics and not message_first:
            self._guess_message(node, cursor, span, depth)

    def _guess_message(
        self, node: DecodedField, cursor: Cursor, span: Span, depth: int
    ) -> bool:
        """Show the span as a nested message if it decodes cleanly as one."""
        try:
            child, _ = self._decode_fields(cursor.sub_cursor(span), None, depth + 1)
        except MaxDepthExceeded as exc:
            node.status = FieldStatus.MAX_DEPTH_EXCEEDED
            node.error = str(exc)
            return True
        if not _structurally_clean(child):
            return False
        node.kind = "message"
        node.value = None
        node.children = child
        return True

    def _decode_group(
        self,
        node: DecodedField,
        cursor: Cursor,
        number: int,
        fd: Optional[FieldDescriptor],
        depth: int,
    ) -> None:
        node.kind = "group"
        field_type = fd.type if fd is not None else None
        descriptor = None
        if isinstance(field_type, (GroupType, MessageType)):
            descriptor = self._registry.find_message(field_type.full_name)
        else:
            self._wire_mismatch(node, fd)

        if depth + 1 > self._max_depth:
            body_start = cursor.position
            _skip_group(cursor, number)
            node.status = FieldStatus.MAX_DEPTH_EXCEEDED
            node.error = f"Nesting deeper than {self._max_depth} levels"
            node.value = cursor.bytes_of(Span(body_start, cursor.position))
            return

        child, closed = self._decode_fields(cursor, descriptor, depth + 1, group_number=number)
        node.children = child
        if not closed:
            node.status = FieldStatus.MALFORMED
            node.error = "Start-group marker without matching end-group"
        elif child.status is FieldStatus.MALFORMED:
            node.status = FieldStatus.MALFORMED
            node.error = f"Malformed group: {child.error}"

    def _enum_name(self, field_type: EnumType, value: int) -> Optional[str]:
        enum = self._registry.find_enum(field_type.full_name)
        return enum.name_for(value) if enum is not None else None

    # -- diagnostics --

    def _emit(self, severity: Severity, kind: str, message: str, offset: Optional[int] = None) -> None:
        if self._sink is not None:
            self._sink(Diagnostic(severity=severity, kind=kind, message=message, offset=offset))

    def _report_tree(self, tree: DecodedTree) -> None:
        """Send malformed / max-depth nodes and oneof conflicts to the sink."""
        if self._sink is None:
            return
        oneof_members: Dict[str, DecodedField] = {}
        for node in tree.fields:
            label = f"field {node.number}" + (f" ({node.name})" if node.name else "")
            if node.status is FieldStatus.MAX_DEPTH_EXCEEDED:
                self._emit(Severity.WARNING, "MaxDepthExceeded", f"{label}: {node.error}", node.offset)
            elif node.status is FieldStatus.MALFORMED and not (
                node.children is not None and node.children.status is FieldStatus.MALFORMED
            ):
                self._emit(Severity.WARNING, "MalformedField", f"{label}: {node.error}", node.offset)

            if node.oneof is not None:
                first = oneof_members.setdefault(node.oneof, node)
                if first.number != node.number:
                    self._emit(
                        Severity.WARNING,
                        "OneofConflict",
                        f"Fields {first.name!r} and {node.name!r} of oneof {node.oneof!r} "
                        f"are both present",
                        node.offset,
                    )
            if node.children is not None:
                self._report_tree(node.children)


def _structurally_clean(tree: DecodedTree) -> bool:
    return tree.status is FieldStatus.OK and all(
        f.status is not FieldStatus.MALFORMED for f in tree.fields
    )


def _skip_group(cursor: Cursor, number: int) -> None:
    """Advance past a group body and its end marker without recursing."""
    open_groups = [number]
    while open_groups:
        key_offset = cursor.position
        key = cursor.read_varint()
        field_number, wire_type = key >> 3, key & 0x7
        if wire_type == WireType.VARINT:
            cursor.read_varint()
        elif wire_type == WireType.FIXED64:
            cursor.read_fixed64()
        elif wire_type == WireType.FIXED32:
            cursor.read_fixed32()
        elif wire_type == WireType.LENGTH_DELIMITED:
            cursor.read_length_delimited()
        elif wire_type == WireType.START_GROUP:
            open_groups.append(field_number)
        elif wire_type == WireType.END_GROUP:
            if open_groups.pop() != field_number:
                raise WireError("Mismatched end-group marker", key_offset)
        else:
            raise WireError(f"Invalid wire type {wire_type}", key_offset)


def dissect(
    data: bytes,
    root_type: Optional[str] = None,
    registry: Optional[SchemaRegistry] = None,
    **options,
) -> DecodedTree:
    """Convenience wrapper: `Dissector(registry, **options).dissect(data, root_type)`."""
    return Dissector(registry, **options).dissect(data, root_type)

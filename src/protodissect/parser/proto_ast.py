"""AST node definitions for protobuf (.proto) files."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# Largest legal field number (2^29 - 1).
MAX_FIELD_NUMBER = 536870911

# Option values are kept opaque: str, int, float, bool, or None for aggregates.
OptionMap = Dict[str, object]


@dataclass
class ProtoField:
    """A field declaration: [label] Type name = number [options];"""

    type_name: str
    field_name: str
    field_number: int
    label: Optional[str] = None
    options: OptionMap = field(default_factory=dict)
    oneof_name: Optional[str] = None
    is_map: bool = False
    is_group: bool = False
    line: int = 0
    col: int = 0

    @property
    def is_repeated(self) -> bool:
        return self.label == "repeated"


@dataclass
class ProtoOneof:
    name: str
    field_names: List[str] = field(default_factory=list)
    options: OptionMap = field(default_factory=dict)


@dataclass
class ProtoEnumValue:
    name: str
    number: int
    options: OptionMap = field(default_factory=dict)


@dataclass
class ProtoEnum:
    name: str
    values: List[ProtoEnumValue] = field(default_factory=list)
    options: OptionMap = field(default_factory=dict)
    line: int = 0
    col: int = 0


@dataclass
class ProtoExtend:
    """An `extend Foo { ... }` block; groups declared inside land in `nested_messages`."""

    extendee: str
    fields: List[ProtoField] = field(default_factory=list)
    nested_messages: List[ProtoMessage] = field(default_factory=list)
    line: int = 0
    col: int = 0


@dataclass
class ProtoMessage:
    """A message definition, possibly containing nested messages."""

    name: str
    fields: List[ProtoField] = field(default_factory=list)
    nested_messages: List[ProtoMessage] = field(default_factory=list)
    enums: List[ProtoEnum] = field(default_factory=list)
    oneofs: List[ProtoOneof] = field(default_factory=list)
    extends: List[ProtoExtend] = field(default_factory=list)
    extension_ranges: List[Tuple[int, int]] = field(default_factory=list)
    reserved_ranges: List[Tuple[int, int]] = field(default_factory=list)
    reserved_names: List[str] = field(default_factory=list)
    options: OptionMap = field(default_factory=dict)
    is_map_entry: bool = False
    line: int = 0
    col: int = 0


@dataclass
class ProtoRpc:
    name: str
    input_type: str
    output_type: str
    client_streaming: bool = False
    server_streaming: bool = False
    options: OptionMap = field(default_factory=dict)


@dataclass
class ProtoService:
    name: str
    rpcs: List[ProtoRpc] = field(default_factory=list)
    options: OptionMap = field(default_factory=dict)
    line: int = 0
    col: int = 0


@dataclass
class ProtoImport:
    path: str
    modifier: Optional[str] = None  # "public", "weak" or None

    @property
    def is_public(self) -> bool:
        return self.modifier == "public"


@dataclass
class ProtoFile:
    """Top-level parsed representation of a .proto file."""

    file_name: str = "<string>"
    syntax: str = "proto2"
    edition: Optional[str] = None
    package: Optional[str] = None
    imports: List[ProtoImport] = field(default_factory=list)
    options: OptionMap = field(default_factory=dict)
    messages: List[ProtoMessage] = field(default_factory=list)
    enums: List[ProtoEnum] = field(default_factory=list)
    services: List[ProtoService] = field(default_factory=list)
    extends: List[ProtoExtend] = field(default_factory=list)

"""Resolved schema descriptors.

Descriptors are frozen once the registry builds them. Type references between
descriptors are stored as fully-qualified names and followed through the
registry, so self-referential and mutually recursive messages need no cycles
in the object graph.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple, Union


class ScalarKind(Enum):
    DOUBLE = "double"
    FLOAT = "float"
    INT64 = "int64"
    UINT64 = "uint64"
    INT32 = "int32"
    FIXED64 = "fixed64"
    FIXED32 = "fixed32"
    BOOL = "bool"
    STRING = "string"
    BYTES = "bytes"
    UINT32 = "uint32"
    SFIXED32 = "sfixed32"
    SFIXED64 = "sfixed64"
    SINT32 = "sint32"
    SINT64 = "sint64"


# Proto scalar type names; any other field type is a message or enum reference.
SCALAR_KINDS = {kind.value: kind for kind in ScalarKind}


class Label(Enum):
    OPTIONAL = "optional"
    REQUIRED = "required"
    REPEATED = "repeated"


@dataclass(frozen=True)
class ScalarType:
    kind: ScalarKind

    def __str__(self) -> str:
        return self.kind.value


@dataclass(frozen=True)
class MessageType:
    full_name: str

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class EnumType:
    full_name: str

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class GroupType:
    full_name: str

    def __str__(self) -> str:
        return f"group {self.full_name}"


@dataclass(frozen=True)
class UnresolvedType:
    name: str

    def __str__(self) -> str:
        return f"<unresolved {self.name}>"


MapValueType = Union[ScalarType, MessageType, EnumType, UnresolvedType]


@dataclass(frozen=True)
class MapType:
    entry_name: str
    key: ScalarKind
    value: MapValueType

    def __str__(self) -> str:
        return f"map<{self.key.value}, {self.value}>"


FieldType = Union[ScalarType, MessageType, EnumType, MapType, GroupType, UnresolvedType]


@dataclass(frozen=True)
class FieldDescriptor:
    number: int
    name: str
    type: FieldType
    label: Label = Label.OPTIONAL
    packed: bool = False
    oneof: Optional[str] = None
    default: object = None
    full_name: str = ""
    json_name: str = ""

    @property
    def is_repeated(self) -> bool:
        return self.label is Label.REPEATED

    @property
    def type_name(self) -> str:
        return str(self.type)


@dataclass(frozen=True)
class MessageDescriptor:
    full_name: str
    fields: Tuple[FieldDescriptor, ...] = ()
    nested_types: Tuple[str, ...] = ()
    nested_enums: Tuple[str, ...] = ()
    oneofs: Tuple[str, ...] = ()
    extension_ranges: Tuple[Tuple[int, int], ...] = ()
    reserved_ranges: Tuple[Tuple[int, int], ...] = ()
    is_map_entry: bool = False
    file_name: str = ""
    fields_by_number: Mapping[int, FieldDescriptor] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self):
        by_number = {}
        for f in self.fields:
            by_number.setdefault(f.number, f)
        object.__setattr__(self, "fields_by_number", MappingProxyType(by_number))

    @property
    def name(self) -> str:
        return self.full_name.rsplit(".", 1)[-1]

    def field_by_number(self, number: int) -> Optional[FieldDescriptor]:
        return self.fields_by_number.get(number)

    def field_by_name(self, name: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def in_extension_range(self, number: int) -> bool:
        return any(lo <= number <= hi for lo, hi in self.extension_ranges)


@dataclass(frozen=True)
class EnumDescriptor:
    full_name: str
    values: Tuple[Tuple[str, int], ...] = ()
    file_name: str = ""

    @property
    def name(self) -> str:
        return self.full_name.rsplit(".", 1)[-1]

    def names_for(self, number: int) -> Tuple[str, ...]:
        """All symbolic names for a value; enums may declare aliases."""
        return tuple(name for name, value in self.values if value == number)

    def name_for(self, number: int) -> Optional[str]:
        names = self.names_for(number)
        return names[0] if names else None


@dataclass(frozen=True)
class MethodDescriptor:
    name: str
    input_type: str
    output_type: str
    client_streaming: bool = False
    server_streaming: bool = False


@dataclass(frozen=True)
class ServiceDescriptor:
    full_name: str
    methods: Tuple[MethodDescriptor, ...] = ()
    file_name: str = ""


Descriptor = Union[MessageDescriptor, EnumDescriptor]

"""Schema registry: one immutable namespace over every loaded .proto file.

Building happens in two passes. The first (proto_transform) assigns every
message and enum its fully-qualified name. The second resolves each type
reference from the scope it was written in. Candidates are tried innermost
scope first (`pkg.Outer.Inner.Ref`, `pkg.Outer.Ref`, `pkg.Ref`, `Ref`),
against these tiers in order:

1. types declared in the referencing file,
2. types exposed by its imports (direct, plus `import public` re-exports),
3. every other loaded file.

A nested sibling therefore always wins over an imported top-level type that
shares its short name.
"""

from __future__ import annotations

import logging
import posixpath
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from protodissect.errors import ResolutionError, TypeNotFound
from protodissect.models import (
    SCALAR_KINDS,
    Descriptor,
    EnumDescriptor,
    EnumType,
    FieldDescriptor,
    FieldType,
    GroupType,
    Label,
    MapType,
    MapValueType,
    MessageDescriptor,
    MessageType,
    MethodDescriptor,
    ScalarKind,
    ScalarType,
    ServiceDescriptor,
    UnresolvedType,
)
from protodissect.parser.proto_ast import ProtoField, ProtoFile
from protodissect.parser.proto_transform import (
    Declaration,
    collect_declarations,
    collect_extends,
    qualify,
)

logger = logging.getLogger(__name__)

_UNPACKABLE = {ScalarKind.STRING, ScalarKind.BYTES}


class SchemaRegistry:
    """Read-only lookup of message, enum, extension and service descriptors."""

    def __init__(
        self,
        messages: Mapping[str, MessageDescriptor],
        enums: Mapping[str, EnumDescriptor],
        extensions: Optional[Mapping[Tuple[str, int], FieldDescriptor]] = None,
        services: Optional[Mapping[str, ServiceDescriptor]] = None,
        file_names: Sequence[str] = (),
    ):
        self._messages = MappingProxyType(dict(messages))
        self._enums = MappingProxyType(dict(enums))
        self._extensions = MappingProxyType(dict(extensions or {}))
        self._services = MappingProxyType(dict(services or {}))
        self._file_names = tuple(file_names)

    @classmethod
    def build(cls, files: Sequence[ProtoFile]) -> Tuple[SchemaRegistry, List[ResolutionError]]:
        """Resolve all files into a registry; problems come back as a list, not raised."""
        return _RegistryBuilder(files).build()

    # -- lookups --

    def lookup(self, name: str) -> Descriptor:
        descriptor = self.get(name)
        if descriptor is None:
            raise TypeNotFound(f"Unknown type {name!r}")
        return descriptor

    def get(self, name: str, default: Optional[Descriptor] = None) -> Optional[Descriptor]:
        key = _strip_dot(name)
        if key in self._messages:
            return self._messages[key]
        return self._enums.get(key, default)

    def find_message(self, name: str) -> Optional[MessageDescriptor]:
        return self._messages.get(_strip_dot(name))

    def find_enum(self, name: str) -> Optional[EnumDescriptor]:
        return self._enums.get(_strip_dot(name))

    def find_extension(self, extendee: str, number: int) -> Optional[FieldDescriptor]:
        return self._extensions.get((_strip_dot(extendee), number))

    def extensions_of(self, extendee: str) -> List[FieldDescriptor]:
        key = _strip_dot(extendee)
        return [fd for (target, _), fd in sorted(self._extensions.items()) if target == key]

    @property
    def messages(self) -> Mapping[str, MessageDescriptor]:
        return self._messages

    @property
    def enums(self) -> Mapping[str, EnumDescriptor]:
        return self._enums

    @property
    def services(self) -> Mapping[str, ServiceDescriptor]:
        return self._services

    @property
    def file_names(self) -> Tuple[str, ...]:
        return self._file_names

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return len(self._messages) + len(self._enums)


def default_json_name(field_name: str) -> str:
    """protoc's default JSON name: underscores dropped, next letter upper-cased."""
    parts = field_name.split("_")
    return parts[0] + "".join(p[:1].upper() + p[1:] for p in parts[1:])


def _strip_dot(name: str) -> str:
    return name[1:] if name.startswith(".") else name


def _scope_candidates(scope: str, ref: str) -> Iterator[str]:
    """Yield qualified candidates for `ref`, innermost scope first."""
    parts = scope.split(".") if scope else []
    for i in range(len(parts), -1, -1):
        yield qualify(".".join(parts[:i]), ref)


def _normalize_path(path: str) -> str:
    return path.replace("\\", "/")


class _RegistryBuilder:
    def __init__(self, files: Sequence[ProtoFile]):
        self._files = list(files)
        self._errors: List[ResolutionError] = []
        self._all: Dict[str, Declaration] = {}
        self._own: Dict[int, Dict[str, Declaration]] = {}
        self._imported: Dict[int, Dict[str, Declaration]] = {}

    def build(self) -> Tuple[SchemaRegistry, List[ResolutionError]]:
        self._collect()
        self._link_imports()

        messages: Dict[str, MessageDescriptor] = {}
        enums: Dict[str, EnumDescriptor] = {}
        for decl in self._all.values():
            if decl.is_message:
                messages[decl.full_name] = self._build_message(decl)
            else:
                enums[decl.full_name] = self._build_enum(decl)

        registry = SchemaRegistry(
            messages,
            enums,
            extensions=self._build_extensions(messages),
            services=self._build_services(),
            file_names=[f.file_name for f in self._files],
        )
        logger.info(
            "Schema registry built: %d message(s), %d enum(s), %d error(s)",
            len(messages), len(enums), len(self._errors),
        )
        return registry, self._errors

    # -- pass 1 --

    def _collect(self) -> None:
        for proto in self._files:
            own: Dict[str, Declaration] = {}
            for decl in collect_declarations(proto):
                existing = self._all.get(decl.full_name)
                if existing is not None:
                    self._errors.append(
                        ResolutionError(
                            f"Duplicate type name {decl.full_name!r} "
                            f"(first declared in {existing.file.file_name})",
                            symbol=decl.full_name,
                            file_name=proto.file_name,
                            line=decl.node.line,
                            col=decl.node.col,
                        )
                    )
                    continue
                self._all[decl.full_name] = decl
                own[decl.full_name] = decl
            self._own[id(proto)] = own

    def _link_imports(self) -> None:
        for proto in self._files:
            visible: Dict[str, Declaration] = {}
            for imported in self._imported_files(proto):
                for name, decl in self._own[id(imported)].items():
                    visible.setdefault(name, decl)
            self._imported[id(proto)] = visible

    def _imported_files(self, proto: ProtoFile) -> List[ProtoFile]:
        """Direct imports, followed transitively through `import public`."""
        result: List[ProtoFile] = []
        seen = {id(proto)}
        pending = [(imp, proto) for imp in proto.imports]
        direct = True
        while pending:
            next_pending = []
            for imp, importer in pending:
                if not direct and not imp.is_public:
                    continue
                target = self._match_import(imp.path)
                if target is None:
                    if direct:
                        logger.warning(
                            "%s: import %r does not match any loaded schema file",
                            importer.file_name, imp.path,
                        )
                    continue
                if id(target) in seen:
                    continue
                seen.add(id(target))
                result.append(target)
                next_pending.extend((sub, target) for sub in target.imports)
            pending = next_pending
            direct = False
        return result

    def _match_import(self, import_path: str) -> Optional[ProtoFile]:
        wanted = _normalize_path(import_path)
        for proto in self._files:
            name = _normalize_path(proto.file_name)
            if name == wanted or name.endswith("/" + wanted):
                return proto
        base = posixpath.basename(wanted)
        for proto in self._files:
            if posixpath.basename(_normalize_path(proto.file_name)) == base:
                return proto
        return None

    # -- pass 2 --

    def _lookup(self, ref: str, scope: str, proto: ProtoFile) -> Optional[Declaration]:
        if ref.startswith("."):
            candidates = [ref[1:]]
        else:
            candidates = list(_scope_candidates(scope, ref))

        tiers = (self._own[id(proto)], self._imported[id(proto)], self._all)
        for tier_index, tier in enumerate(tiers):
            for candidate in candidates:
                decl = tier.get(candidate)
                if decl is not None:
                    if tier_index == 2:
                        logger.debug(
                            "%s: %r resolved to %s, declared in %s which is not imported",
                            proto.file_name, ref, decl.full_name, decl.file.file_name,
                        )
                    return decl
        return None

    def _resolve(
        self,
        ref: str,
        scope: str,
        proto: ProtoFile,
        referrer: str,
        line: int,
        col: int,
    ) -> Optional[Declaration]:
        decl = self._lookup(ref, scope, proto)
        if decl is None:
            self._errors.append(
                ResolutionError(
                    f"Unresolved type {ref!r} referenced by {referrer}",
                    symbol=ref,
                    file_name=proto.file_name,
                    line=line,
                    col=col,
                )
            )
        return decl

    def _build_message(self, decl: Declaration) -> MessageDescriptor:
        node = decl.node
        full_name = decl.full_name
        fields: List[FieldDescriptor] = []
        seen: Dict[int, str] = {}

        for pf in node.fields:
            if pf.field_number in seen:
                self._errors.append(
                    ResolutionError(
                        f"Duplicate field number {pf.field_number} in {full_name!r} "
                        f"({seen[pf.field_number]!r} and {pf.field_name!r})",
                        symbol=qualify(full_name, pf.field_name),
                        file_name=decl.file.file_name,
                        line=pf.line,
                        col=pf.col,
                    )
                )
                continue
            seen[pf.field_number] = pf.field_name
            fields.append(self._build_field(pf, full_name, decl.file))

        nested_types = [qualify(full_name, m.name) for m in node.nested_messages]
        for ext in node.extends:
            nested_types.extend(qualify(full_name, m.name) for m in ext.nested_messages)

        return MessageDescriptor(
            full_name=full_name,
            fields=tuple(fields),
            nested_types=tuple(nested_types),
            nested_enums=tuple(qualify(full_name, e.name) for e in node.enums),
            oneofs=tuple(o.name for o in node.oneofs),
            extension_ranges=tuple(node.extension_ranges),
            reserved_ranges=tuple(node.reserved_ranges),
            is_map_entry=node.is_map_entry,
            file_name=decl.file.file_name,
        )

    def _build_enum(self, decl: Declaration) -> EnumDescriptor:
        return EnumDescriptor(
            full_name=decl.full_name,
            values=tuple((v.name, v.number) for v in decl.node.values),
            file_name=decl.file.file_name,
        )

    def _build_field(self, pf: ProtoField, scope: str, proto: ProtoFile) -> FieldDescriptor:
        field_type = self._field_type(pf, scope, proto)
        label = Label(pf.label) if pf.label else Label.OPTIONAL
        return FieldDescriptor(
            number=pf.field_number,
            name=pf.field_name,
            type=field_type,
            label=label,
            packed=self._is_packed(pf, field_type, label, proto),
            oneof=pf.oneof_name,
            default=pf.options.get("default"),
            full_name=qualify(scope, pf.field_name),
            json_name=str(pf.options.get("json_name") or default_json_name(pf.field_name)),
        )

    def _field_type(self, pf: ProtoField, scope: str, proto: ProtoFile) -> FieldType:
        kind = SCALAR_KINDS.get(pf.type_name)
        if kind is not None:
            return ScalarType(kind)

        decl = self._resolve(
            pf.type_name, scope, proto, f"field {qualify(scope, pf.field_name)!r}", pf.line, pf.col
        )
        if decl is None:
            return UnresolvedType(pf.type_name)
        if not decl.is_message:
            return EnumType(decl.full_name)
        if pf.is_map and decl.node.is_map_entry:
            return self._map_type(decl)
        if pf.is_group:
            return GroupType(decl.full_name)
        return MessageType(decl.full_name)

    def _map_type(self, entry: Declaration) -> MapType:
        by_number = {f.field_number: f for f in entry.node.fields}
        key_field, value_field = by_number[1], by_number[2]
        value: MapValueType
        kind = SCALAR_KINDS.get(value_field.type_name)
        if kind is not None:
            value = ScalarType(kind)
        else:
            # Errors for the value type are reported once, by the entry message itself.
            decl = self._lookup(value_field.type_name, entry.full_name, entry.file)
            if decl is None:
                value = UnresolvedType(value_field.type_name)
            elif decl.is_message:
                value = MessageType(decl.full_name)
            else:
                value = EnumType(decl.full_name)
        return MapType(entry.full_name, SCALAR_KINDS[key_field.type_name], value)

    def _is_packed(self, pf: ProtoField, field_type: FieldType, label: Label, proto: ProtoFile) -> bool:
        if label is not Label.REPEATED:
            return False
        if isinstance(field_type, ScalarType):
            if field_type.kind in _UNPACKABLE:
                return False
        elif not isinstance(field_type, EnumType):
            return False

        if "packed" in pf.options:
            return bool(pf.options["packed"])
        encoding = pf.options.get(
            "features.repeated_field_encoding",
            proto.options.get("features.repeated_field_encoding"),
        )
        if encoding == "EXPANDED":
            return False
        return proto.syntax in ("proto3", "editions")

    def _build_extensions(
        self, messages: Mapping[str, MessageDescriptor]
    ) -> Dict[Tuple[str, int], FieldDescriptor]:
        extensions: Dict[Tuple[str, int], FieldDescriptor] = {}
        for proto in self._files:
            for ext_decl in collect_extends(proto):
                ext = ext_decl.node
                target = self._resolve(
                    ext.extendee, ext_decl.scope, proto, "extend block", ext.line, ext.col
                )
                if target is None:
                    continue
                if not target.is_message:
                    self._errors.append(
                        ResolutionError(
                            f"Extend target {target.full_name!r} is not a message",
                            symbol=ext.extendee,
                            file_name=proto.file_name,
                            line=ext.line,
                            col=ext.col,
                        )
                    )
                    continue
                for pf in ext.fields:
                    key = (target.full_name, pf.field_number)
                    if key in extensions:
                        self._errors.append(
                            ResolutionError(
                                f"Duplicate extension number {pf.field_number} "
                                f"for {target.full_name!r}",
                                symbol=qualify(ext_decl.scope, pf.field_name),
                                file_name=proto.file_name,
                                line=pf.line,
                                col=pf.col,
                            )
                        )
                        continue
                    if not messages[target.full_name].in_extension_range(pf.field_number):
                        self._errors.append(
                            ResolutionError(
                                f"Extension number {pf.field_number} is outside the "
                                f"extension ranges of {target.full_name!r}",
                                symbol=qualify(ext_decl.scope, pf.field_name),
                                file_name=proto.file_name,
                                line=pf.line,
                                col=pf.col,
                            )
                        )
                        continue
                    extensions[key] = self._build_field(pf, ext_decl.scope, proto)
        return extensions

    def _build_services(self) -> Dict[str, ServiceDescriptor]:
        services: Dict[str, ServiceDescriptor] = {}
        for proto in self._files:
            scope = proto.package or ""
            for svc in proto.services:
                full_name = qualify(scope, svc.name)
                methods = []
                for rpc in svc.rpcs:
                    referrer = f"rpc {full_name}.{rpc.name}"
                    types = []
                    for ref in (rpc.input_type, rpc.output_type):
                        decl = self._resolve(ref, scope, proto, referrer, svc.line, svc.col)
                        types.append(decl.full_name if decl is not None else ref)
                    methods.append(
                        MethodDescriptor(
                            name=rpc.name,
                            input_type=types[0],
                            output_type=types[1],
                            client_streaming=rpc.client_streaming,
                            server_streaming=rpc.server_streaming,
                        )
                    )
                services[full_name] = ServiceDescriptor(full_name, tuple(methods), proto.file_name)
        return services

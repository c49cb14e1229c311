"""Flatten proto ASTs into fully-qualified declarations.

This is the first pass of schema resolution: every message and enum gets its
fully-qualified name (package + enclosing message path), and every extend
block is recorded together with the scope it was declared in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Union

from .proto_ast import ProtoEnum, ProtoExtend, ProtoFile, ProtoMessage


@dataclass
class Declaration:
    """A named type together with where it was declared."""

    full_name: str
    node: Union[ProtoMessage, ProtoEnum]
    scope: str  # fully-qualified name of the enclosing message, or the package
    file: ProtoFile

    @property
    def is_message(self) -> bool:
        return isinstance(self.node, ProtoMessage)


@dataclass
class ExtendDeclaration:
    node: ProtoExtend
    scope: str
    file: ProtoFile


def qualify(scope: str, name: str) -> str:
    return f"{scope}.{name}" if scope else name


def collect_declarations(ast: ProtoFile) -> List[Declaration]:
    """Return every message and enum in the file, parents before their nested types."""
    result: List[Declaration] = []
    scope = ast.package or ""
    for enum_node in ast.enums:
        result.append(Declaration(qualify(scope, enum_node.name), enum_node, scope, ast))
    for msg_node in ast.messages:
        result.extend(_collect_message(msg_node, scope, ast))
    for ext in ast.extends:
        for group_node in ext.nested_messages:
            result.extend(_collect_message(group_node, scope, ast))
    return result


def collect_extends(ast: ProtoFile) -> List[ExtendDeclaration]:
    """Return every extend block in the file with its declaring scope."""
    result: List[ExtendDeclaration] = []
    scope = ast.package or ""
    result.extend(ExtendDeclaration(ext, scope, ast) for ext in ast.extends)
    for msg_node in ast.messages:
        _collect_message_extends(msg_node, scope, ast, result)
    return result


def _collect_message(node: ProtoMessage, scope: str, ast: ProtoFile) -> List[Declaration]:
    full_name = qualify(scope, node.name)
    result = [Declaration(full_name, node, scope, ast)]
    for enum_node in node.enums:
        result.append(Declaration(qualify(full_name, enum_node.name), enum_node, full_name, ast))
    for nested in node.nested_messages:
        result.extend(_collect_message(nested, full_name, ast))
    for ext in node.extends:
        for group_node in ext.nested_messages:
            result.extend(_collect_message(group_node, full_name, ast))
    return result


def _collect_message_extends(
    node: ProtoMessage,
    scope: str,
    ast: ProtoFile,
    out: List[ExtendDeclaration],
) -> None:
    full_name = qualify(scope, node.name)
    out.extend(ExtendDeclaration(ext, full_name, ast) for ext in node.extends)
    for nested in node.nested_messages:
        _collect_message_extends(nested, full_name, ast, out)

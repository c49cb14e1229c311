"""Plain-text rendering of decoded trees and of the schema registry."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, List, Tuple

from jinja2 import Environment, FileSystemLoader

from protodissect.dissector import DecodedField, DecodedTree, FieldStatus
from protodissect.registry import SchemaRegistry

# Longest raw byte preview, in hex characters.
MAX_HEX_PREVIEW = 48


def _get_template_env() -> Environment:
    template_dir = Path(__file__).parent / "templates"
    env = Environment(
        loader=FileSystemLoader(str(template_dir)),
        keep_trailing_newline=True,
    )
    env.filters["describe"] = describe_field
    return env


def _hex_preview(data: bytes) -> str:
    text = data.hex()
    if len(text) > MAX_HEX_PREVIEW:
        return f"{text[:MAX_HEX_PREVIEW]}... ({len(data)} bytes)"
    return text


def _format_value(node: DecodedField) -> str:
    if node.children is not None:
        label = node.type_name or node.kind
        return f"{label} {{{len(node.children)} field(s)}}"
    if node.elements:
        parts = [e.enum_name or str(e.value) for e in node.elements]
        return "[" + ", ".join(parts) + "]"
    if node.enum_name is not None:
        return f"{node.enum_name} ({node.value})"
    if isinstance(node.value, bytes):
        return _hex_preview(node.value)
    if isinstance(node.value, str):
        return repr(node.value)
    return str(node.value)


def describe_field(node: DecodedField) -> str:
    """One-line summary: number, name, wire type, value, span and status."""
    name = f" {node.name}" if node.name else ""
    type_name = f" ({node.type_name})" if node.type_name else ""
    text = f"#{node.number}{name}{type_name} {node.wire_type_name} = {_format_value(node)}"
    if node.interpretations:
        extras = ", ".join(f"{k}={v}" for k, v in node.interpretations.items())
        text += f" [{extras}]"
    text += f" @{node.offset}+{node.length}"
    if node.status is not FieldStatus.OK:
        text += f" <{node.status.value}>"
    if node.error:
        text += f" ({node.error})"
    return text


def _rows(tree: DecodedTree, depth: int = 0) -> Iterator[Tuple[int, DecodedField]]:
    for node in tree.fields:
        yield depth, node
        if node.children is not None:
            yield from _rows(node.children, depth + 1)


def render_tree(tree: DecodedTree, title: str = "") -> str:
    env = _get_template_env()
    template = env.get_template("tree.txt.j2")
    rows: List[Tuple[int, DecodedField]] = list(_rows(tree))
    return template.render(title=title, tree=tree, rows=rows)


def render_registry_summary(registry: SchemaRegistry) -> str:
    """Dump every message (with its extensions), enum and service in the registry."""
    env = _get_template_env()
    template = env.get_template("registry.txt.j2")
    return template.render(
        messages=[registry.messages[name] for name in sorted(registry.messages)],
        extensions={name: registry.extensions_of(name) for name in registry.messages},
        enums=[registry.enums[name] for name in sorted(registry.enums)],
        services=[registry.services[name] for name in sorted(registry.services)],
    )

from __future__ import annotations

import argparse
import binascii
import json
import sys
from pathlib import Path
from typing import List, Optional

from protodissect.diagnostics import DiagnosticCollector
from protodissect.dissector import DecodedTree, Dissector, check_max_depth
from protodissect.errors import SchemaLoadError
from protodissect.loader import load_schemas
from protodissect.registry import SchemaRegistry
from protodissect.render import render_registry_summary, render_tree
from protodissect.settings import Settings


def _json_default(value):
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def load_registry(settings: Settings) -> SchemaRegistry:
    """Load every configured schema file, printing problems once. Exits on fatal errors."""
    if not settings.proto_dirs and not settings.proto_files:
        return SchemaRegistry({}, {})

    try:
        proto_files = settings.get_proto_file_names()
        diagnostics = DiagnosticCollector()
        result = load_schemas(proto_files, sink=diagnostics)
    except SchemaLoadError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Loaded {len(result.files)} of {len(proto_files)} proto file(s)", file=sys.stderr)
    for diagnostic in diagnostics:
        print(f"  {diagnostic}", file=sys.stderr)
    return result.registry


def run(
    settings: Settings,
    data: bytes,
    root_type: Optional[str] = None,
    as_json: bool = False,
    summary: bool = False,
) -> DecodedTree:
    """Main pipeline: load schemas, dissect one payload, print the tree."""
    registry = load_registry(settings)
    if summary:
        print(render_registry_summary(registry), end="")

    diagnostics = DiagnosticCollector()
    dissector = Dissector(
        registry,
        max_depth=settings.max_depth,
        heuristics=settings.heuristics,
        sink=diagnostics,
    )
    tree = dissector.dissect(data, root_type)

    if as_json:
        print(json.dumps(tree.to_dict(), indent=2, default=_json_default))
    else:
        print(render_tree(tree), end="")
    for diagnostic in diagnostics:
        print(f"  {diagnostic}", file=sys.stderr)
    return tree


def _read_payload(args: argparse.Namespace) -> bytes:
    if args.hex is not None:
        return binascii.unhexlify("".join(args.hex.split()))
    if args.input == "-":
        return sys.stdin.buffer.read()
    return Path(args.input).read_bytes()


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Decode a Protocol Buffers payload, with or without .proto schemas",
    )
    parser.add_argument(
        "--proto-dir",
        action="append",
        default=[],
        help="Directory whose .proto files are loaded (not recursive); repeatable",
    )
    parser.add_argument(
        "--proto-file",
        action="append",
        default=[],
        help="A .proto file to load; repeatable",
    )
    parser.add_argument(
        "--type",
        dest="root_type",
        help="Fully-qualified message type of the payload",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--hex", help="Payload as a hex string")
    source.add_argument("--input", help="File holding the raw payload ('-' for stdin)")
    parser.add_argument("--max-depth", type=int, help="Maximum nesting depth to decode")
    parser.add_argument(
        "--no-heuristics",
        action="store_true",
        help="Do not guess whether unknown length-delimited fields are messages",
    )
    parser.add_argument("--json", action="store_true", help="Print the tree as JSON")
    parser.add_argument(
        "--summary",
        action="store_true",
        help="Print every loaded message, enum and service before decoding",
    )
    parser.add_argument(
        "extra",
        nargs="*",
        help="Extra settings: debug=N, max_depth=N or .proto file names",
    )

    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env(
            proto_dirs=list(args.proto_dir), proto_files=list(args.proto_file)
        )
    except ValueError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        sys.exit(1)
    try:
        settings.process_cmd_line(args.extra)
        if args.max_depth is not None:
            settings.max_depth = check_max_depth(args.max_depth)
    except ValueError as e:
        parser.error(str(e))
    settings.heuristics = not args.no_heuristics

    try:
        data = _read_payload(args)
    except (OSError, binascii.Error, ValueError) as e:
        print(f"FATAL: could not read payload: {e}", file=sys.stderr)
        sys.exit(1)

    run(settings, data, args.root_type, as_json=args.json, summary=args.summary)


if __name__ == "__main__":
    main()

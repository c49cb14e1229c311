from __future__ import annotations

from pathlib import Path

from .proto_ast import ProtoFile
from .proto_ast_parser import ProtoParser
from .proto_tokenizer import iter_tokens


def parse_proto_text(text: str, file_name: str = "<string>") -> ProtoFile:
    """Parse .proto source text. Raises LexError or ParseError."""
    return ProtoParser(iter_tokens(text, file_name), file_name).parse()


def parse_proto_file(file_path: str) -> ProtoFile:
    """Parse a .proto file from disk."""
    text = Path(file_path).read_text(encoding="utf-8")
    return parse_proto_text(text, file_name=str(file_path))

"""Tokenizer for protobuf (.proto) files."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator, List

from protodissect.errors import LexError


class ProtoTokenType(Enum):
    # Keywords
    SYNTAX = auto()
    EDITION = auto()
    IMPORT = auto()
    WEAK = auto()
    PUBLIC = auto()
    PACKAGE = auto()
    OPTION = auto()
    MESSAGE = auto()
    ENUM = auto()
    SERVICE = auto()
    RPC = auto()
    RETURNS = auto()
    STREAM = auto()
    ONEOF = auto()
    MAP = auto()
    RESERVED = auto()
    EXTENSIONS = auto()
    EXTEND = auto()
    TO = auto()
    MAX = auto()
    REPEATED = auto()
    OPTIONAL = auto()
    REQUIRED = auto()
    GROUP = auto()

    # Delimiters
    LBRACE = auto()
    RBRACE = auto()
    LPAREN = auto()
    RPAREN = auto()
    LBRACKET = auto()
    RBRACKET = auto()
    LANGLE = auto()
    RANGLE = auto()
    SEMICOLON = auto()
    COMMA = auto()
    EQUALS = auto()
    DOT = auto()
    MINUS = auto()
    PLUS = auto()
    COLON = auto()

    # Literals
    IDENT = auto()
    INT = auto()
    FLOAT = auto()
    STRING_LIT = auto()

    # Special
    EOF = auto()


_KEYWORDS = {
    "syntax": ProtoTokenType.SYNTAX,
    "edition": ProtoTokenType.EDITION,
    "import": ProtoTokenType.IMPORT,
    "weak": ProtoTokenType.WEAK,
    "public": ProtoTokenType.PUBLIC,
    "package": ProtoTokenType.PACKAGE,
    "option": ProtoTokenType.OPTION,
    "message": ProtoTokenType.MESSAGE,
    "enum": ProtoTokenType.ENUM,
    "service": ProtoTokenType.SERVICE,
    "rpc": ProtoTokenType.RPC,
    "returns": ProtoTokenType.RETURNS,
    "stream": ProtoTokenType.STREAM,
    "oneof": ProtoTokenType.ONEOF,
    "map": ProtoTokenType.MAP,
    "reserved": ProtoTokenType.RESERVED,
    "extensions": ProtoTokenType.EXTENSIONS,
    "extend": ProtoTokenType.EXTEND,
    "to": ProtoTokenType.TO,
    "max": ProtoTokenType.MAX,
    "repeated": ProtoTokenType.REPEATED,
    "optional": ProtoTokenType.OPTIONAL,
    "required": ProtoTokenType.REQUIRED,
    "group": ProtoTokenType.GROUP,
}

KEYWORD_TYPES = frozenset(_KEYWORDS.values())

_SYMBOLS = {
    "{": ProtoTokenType.LBRACE,
    "}": ProtoTokenType.RBRACE,
    "(": ProtoTokenType.LPAREN,
    ")": ProtoTokenType.RPAREN,
    "[": ProtoTokenType.LBRACKET,
    "]": ProtoTokenType.RBRACKET,
    "<": ProtoTokenType.LANGLE,
    ">": ProtoTokenType.RANGLE,
    ";": ProtoTokenType.SEMICOLON,
    ",": ProtoTokenType.COMMA,
    "=": ProtoTokenType.EQUALS,
    ".": ProtoTokenType.DOT,
    "-": ProtoTokenType.MINUS,
    "+": ProtoTokenType.PLUS,
    ":": ProtoTokenType.COLON,
}

_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
    "\\": "\\",
    "'": "'",
    '"': '"',
    "?": "?",
}

_HEX_DIGITS = "0123456789abcdefABCDEF"
_OCT_DIGITS = "01234567"


@dataclass(frozen=True)
class ProtoToken:
    type: ProtoTokenType
    value: str
    line: int
    col: int

    @property
    def is_word(self) -> bool:
        """True for identifiers and keywords, which may both serve as names."""
        return self.type == ProtoTokenType.IDENT or self.type in KEYWORD_TYPES


def tokenize_proto(text: str, file_name: str = "<string>") -> List[ProtoToken]:
    """Tokenize a protobuf source string into a list of tokens."""
    return list(iter_tokens(text, file_name))


def iter_tokens(text: str, file_name: str = "<string>") -> Iterator[ProtoToken]:
    """Lazily tokenize protobuf source, ending with a single EOF token.

    Raises LexError (carrying file, line and column) for unterminated strings,
    unterminated block comments and characters that cannot start a token.
    """
    i = 0
    line = 1
    col = 1
    n = len(text)

    while i < n:
        ch = text[i]

        # Whitespace
        if ch in (" ", "\t", "\r", "\f", "\v"):
            i += 1
            col += 1
            continue

        if ch == "\n":
            i += 1
            line += 1
            col = 1
            continue

        # Single-line comment
        if ch == "/" and i + 1 < n and text[i + 1] == "/":
            while i < n and text[i] != "\n":
                i += 1
            continue

        # Multi-line comment
        if ch == "/" and i + 1 < n and text[i + 1] == "*":
            start_line, start_col = line, col
            i += 2
            col += 2
            closed = False
            while i < n:
                if text[i] == "\n":
                    line += 1
                    col = 1
                elif text[i] == "*" and i + 1 < n and text[i + 1] == "/":
                    i += 2
                    col += 2
                    closed = True
                    break
                else:
                    col += 1
                i += 1
            if not closed:
                raise LexError("Unterminated block comment", file_name, start_line, start_col)
            continue

        # Number, including floats written as ".5"
        if ch.isdigit() or (ch == "." and i + 1 < n and text[i + 1].isdigit()):
            start = i
            i, is_float = _scan_number(text, i)
            if i < n and (text[i].isalnum() or text[i] == "_"):
                raise LexError(
                    f"Invalid numeric literal {text[start:i + 1]!r}", file_name, line, col
                )
            tok_type = ProtoTokenType.FLOAT if is_float else ProtoTokenType.INT
            yield ProtoToken(tok_type, text[start:i], line, col)
            col += i - start
            continue

        if ch in _SYMBOLS:
            yield ProtoToken(_SYMBOLS[ch], ch, line, col)
            i += 1
            col += 1
            continue

        # String literal
        if ch in ('"', "'"):
            start = i
            value, i = _scan_string(text, i, file_name, line, col)
            yield ProtoToken(ProtoTokenType.STRING_LIT, value, line, col)
            col += i - start
            continue

        # Identifier / keyword
        if ch.isalpha() or ch == "_":
            start = i
            start_col = col
            while i < n and (text[i].isalnum() or text[i] == "_"):
                i += 1
                col += 1
            word = text[start:i]
            tok_type = _KEYWORDS.get(word, ProtoTokenType.IDENT)
            yield ProtoToken(tok_type, word, line, start_col)
            continue

        raise LexError(f"Invalid character {ch!r}", file_name, line, col)

    yield ProtoToken(ProtoTokenType.EOF, "", line, col)


def _scan_number(text: str, i: int):
    """Return (end index, is_float) for the numeric literal starting at i."""
    n = len(text)
    if text[i] == "0" and i + 1 < n and text[i + 1] in "xX":
        i += 2
        while i < n and text[i] in _HEX_DIGITS:
            i += 1
        return i, False

    is_float = False
    while i < n and text[i].isdigit():
        i += 1
    if i < n and text[i] == ".":
        is_float = True
        i += 1
        while i < n and text[i].isdigit():
            i += 1
    if i < n and text[i] in "eE":
        j = i + 1
        if j < n and text[j] in "+-":
            j += 1
        if j < n and text[j].isdigit():
            is_float = True
            i = j
            while i < n and text[i].isdigit():
                i += 1
    return i, is_float


def _scan_string(text: str, i: int, file_name: str, line: int, col: int):
    """Scan a quoted string starting at i; return (decoded value, end index)."""
    quote = text[i]
    n = len(text)
    i += 1
    out: List[str] = []
    while True:
        if i >= n or text[i] == "\n":
            raise LexError("Unterminated string literal", file_name, line, col)
        ch = text[i]
        if ch == quote:
            return "".join(out), i + 1
        if ch != "\\":
            out.append(ch)
            i += 1
            continue

        # Escape sequence
        i += 1
        if i >= n:
            raise LexError("Unterminated string literal", file_name, line, col)
        esc = text[i]
        if esc in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[esc])
            i += 1
        elif esc in "xX":
            j = i + 1
            while j < n and j < i + 3 and text[j] in _HEX_DIGITS:
                j += 1
            if j == i + 1:
                raise LexError("Invalid \\x escape in string literal", file_name, line, col)
            out.append(chr(int(text[i + 1:j], 16)))
            i = j
        elif esc in _OCT_DIGITS:
            j = i
            while j < n and j < i + 3 and text[j] in _OCT_DIGITS:
                j += 1
            out.append(chr(int(text[i:j], 8)))
            i = j
        elif esc in "uU":
            width = 4 if esc == "u" else 8
            digits = text[i + 1:i + 1 + width]
            if (
                len(digits) != width
                or any(d not in _HEX_DIGITS for d in digits)
                or int(digits, 16) > 0x10FFFF
            ):
                raise LexError(f"Invalid \\{esc} escape in string literal", file_name, line, col)
            out.append(chr(int(digits, 16)))
            i += 1 + width
        else:
            raise LexError(f"Invalid escape \\{esc} in string literal", file_name, line, col)

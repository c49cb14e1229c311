"""Recursive descent parser for protobuf (.proto) files.

Consumes a token stream from proto_tokenizer and produces proto AST nodes.
Tokens are pulled lazily; the parser only ever buffers the few tokens of
lookahead it needs.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterable, List, Optional, Tuple

from protodissect.errors import ParseError

from .proto_ast import (
    MAX_FIELD_NUMBER,
    OptionMap,
    ProtoEnum,
    ProtoEnumValue,
    ProtoExtend,
    ProtoField,
    ProtoFile,
    ProtoImport,
    ProtoMessage,
    ProtoOneof,
    ProtoRpc,
    ProtoService,
)
from .proto_tokenizer import ProtoToken, ProtoTokenType

_LABELS = (ProtoTokenType.OPTIONAL, ProtoTokenType.REQUIRED, ProtoTokenType.REPEATED)

# Scalar types allowed as map keys.
MAP_KEY_TYPES = {
    "int32", "int64", "uint32", "uint64", "sint32", "sint64",
    "fixed32", "fixed64", "sfixed32", "sfixed64", "bool", "string",
}

# Upper bound used for `to max` in enum reserved ranges.
_MAX_ENUM_VALUE = 2147483647


def map_entry_name(field_name: str) -> str:
    """Name of the implicit entry message for a map field: foo_bar -> FooBarEntry."""
    parts = field_name.split("_")
    return "".join(p[:1].upper() + p[1:] for p in parts) + "Entry"


class ProtoParser:
    """Recursive descent parser for .proto files."""

    def __init__(self, tokens: Iterable[ProtoToken], file_name: str = "<string>"):
        self._tokens = iter(tokens)
        self._lookahead: Deque[ProtoToken] = deque()
        self._file_name = file_name

    # -- public API --

    def parse(self) -> ProtoFile:
        """Parse the full token stream into a ProtoFile AST."""
        proto = ProtoFile(file_name=self._file_name)

        while not self._at_end():
            tok = self._peek()
            tt = tok.type

            if tt == ProtoTokenType.SYNTAX:
                self._parse_syntax(proto)
            elif tt == ProtoTokenType.EDITION:
                self._parse_edition(proto)
            elif tt == ProtoTokenType.PACKAGE:
                self._advance()
                if proto.package is not None:
                    raise self._error("Multiple package definitions", tok)
                proto.package = self._parse_full_ident()
                self._expect(ProtoTokenType.SEMICOLON)
            elif tt == ProtoTokenType.IMPORT:
                proto.imports.append(self._parse_import())
            elif tt == ProtoTokenType.OPTION:
                name, value = self._parse_option_statement()
                proto.options[name] = value
            elif tt == ProtoTokenType.MESSAGE:
                proto.messages.append(self._parse_message())
            elif tt == ProtoTokenType.ENUM:
                proto.enums.append(self._parse_enum())
            elif tt == ProtoTokenType.SERVICE:
                proto.services.append(self._parse_service())
            elif tt == ProtoTokenType.EXTEND:
                proto.extends.append(self._parse_extend())
            elif tt == ProtoTokenType.SEMICOLON:
                self._advance()
            else:
                raise self._error(f"Unexpected {tok.value!r} at top level", tok)

        return proto

    # -- file-level statements --

    def _parse_syntax(self, proto: ProtoFile) -> None:
        """Parse: SYNTAX EQUALS STRING SEMICOLON"""
        self._expect(ProtoTokenType.SYNTAX)
        self._expect(ProtoTokenType.EQUALS)
        tok = self._peek()
        value = self._parse_string()
        if value not in ("proto2", "proto3"):
            raise self._error(f"Unrecognized syntax {value!r}", tok)
        self._expect(ProtoTokenType.SEMICOLON)
        proto.syntax = value

    def _parse_edition(self, proto: ProtoFile) -> None:
        """Parse: EDITION EQUALS STRING SEMICOLON"""
        self._expect(ProtoTokenType.EDITION)
        self._expect(ProtoTokenType.EQUALS)
        proto.edition = self._parse_string()
        proto.syntax = "editions"
        self._expect(ProtoTokenType.SEMICOLON)

    def _parse_import(self) -> ProtoImport:
        """Parse: IMPORT [WEAK|PUBLIC] STRING SEMICOLON"""
        self._expect(ProtoTokenType.IMPORT)
        modifier = None
        if self._peek().type in (ProtoTokenType.WEAK, ProtoTokenType.PUBLIC):
            modifier = self._advance().value
        path = self._parse_string()
        self._expect(ProtoTokenType.SEMICOLON)
        return ProtoImport(path=path, modifier=modifier)

    # -- message parsing --

    def _parse_message(self) -> ProtoMessage:
        """Parse: MESSAGE IDENT LBRACE body RBRACE"""
        self._expect(ProtoTokenType.MESSAGE)
        name_tok = self._expect_name()
        msg = ProtoMessage(name=name_tok.value, line=name_tok.line, col=name_tok.col)
        self._expect(ProtoTokenType.LBRACE)
        self._parse_message_body(msg)
        self._expect(ProtoTokenType.RBRACE)
        return msg

    def _parse_message_body(self, msg: ProtoMessage) -> None:
        """Parse the contents between { and } of a message (or group)."""
        while not self._check(ProtoTokenType.RBRACE):
            tok = self._peek()
            tt = tok.type

            if tt == ProtoTokenType.EOF:
                raise self._error(f"Unexpected end of file inside message {msg.name!r}", tok)
            elif tt == ProtoTokenType.MESSAGE:
                msg.nested_messages.append(self._parse_message())
            elif tt == ProtoTokenType.ENUM:
                msg.enums.append(self._parse_enum())
            elif tt == ProtoTokenType.ONEOF:
                msg.oneofs.append(self._parse_oneof(msg))
            elif tt == ProtoTokenType.EXTEND:
                msg.extends.append(self._parse_extend())
            elif tt == ProtoTokenType.EXTENSIONS:
                self._advance()
                msg.extension_ranges.extend(self._parse_ranges(MAX_FIELD_NUMBER))
                if self._check(ProtoTokenType.LBRACKET):
                    self._parse_field_options()
                self._expect(ProtoTokenType.SEMICOLON)
            elif tt == ProtoTokenType.RESERVED:
                ranges, names = self._parse_reserved(MAX_FIELD_NUMBER)
                msg.reserved_ranges.extend(ranges)
                msg.reserved_names.extend(names)
            elif tt == ProtoTokenType.OPTION:
                name, value = self._parse_option_statement()
                msg.options[name] = value
            elif tt == ProtoTokenType.SEMICOLON:
                self._advance()
            elif tt == ProtoTokenType.MAP and self._peek(1).type == ProtoTokenType.LANGLE:
                self._parse_map_field(msg)
            else:
                self._parse_field(msg.fields, msg.nested_messages)

    def _parse_field(
        self,
        fields: List[ProtoField],
        nested: List[ProtoMessage],
        *,
        oneof_name: Optional[str] = None,
    ) -> ProtoField:
        """Parse: [LABEL] TYPE IDENT(name) EQUALS NUMBER [options] SEMICOLON

        Group fields (`[LABEL] group Name = N { ... }`) are handed off to
        _parse_group. The new field is appended to `fields`.
        """
        start = self._peek()
        label = None
        if start.type in _LABELS:
            if oneof_name is not None:
                raise self._error("Fields in oneofs must not have labels", start)
            label = self._advance().value

        if self._check(ProtoTokenType.GROUP) and self._peek(1).is_word:
            proto_field = self._parse_group(nested, label, oneof_name)
            fields.append(proto_field)
            return proto_field

        type_name = self._parse_type_ref()
        name_tok = self._expect_name()
        self._expect(ProtoTokenType.EQUALS)
        number = self._parse_field_number()
        options = self._parse_field_options() if self._check(ProtoTokenType.LBRACKET) else {}
        self._expect(ProtoTokenType.SEMICOLON)

        proto_field = ProtoField(
            type_name=type_name,
            field_name=name_tok.value,
            field_number=number,
            label=label,
            options=options,
            oneof_name=oneof_name,
            line=name_tok.line,
            col=name_tok.col,
        )
        fields.append(proto_field)
        return proto_field

    def _parse_map_field(self, msg: ProtoMessage) -> None:
        """Parse: MAP LANGLE KEY COMMA VALUE RANGLE IDENT EQUALS NUMBER [options] SEMICOLON

        Synthesizes the implicit `<Name>Entry` message with key = 1, value = 2.
        """
        self._expect(ProtoTokenType.MAP)
        self._expect(ProtoTokenType.LANGLE)
        key_tok = self._peek()
        key_type = self._parse_type_ref()
        if key_type not in MAP_KEY_TYPES:
            raise self._error(f"Invalid map key type {key_type!r}", key_tok)
        self._expect(ProtoTokenType.COMMA)
        value_type = self._parse_type_ref()
        self._expect(ProtoTokenType.RANGLE)
        name_tok = self._expect_name()
        self._expect(ProtoTokenType.EQUALS)
        number = self._parse_field_number()
        options = self._parse_field_options() if self._check(ProtoTokenType.LBRACKET) else {}
        self._expect(ProtoTokenType.SEMICOLON)

        entry_name = map_entry_name(name_tok.value)
        entry = ProtoMessage(
            name=entry_name,
            fields=[
                ProtoField(key_type, "key", 1, label="optional", line=name_tok.line, col=name_tok.col),
                ProtoField(value_type, "value", 2, label="optional", line=name_tok.line, col=name_tok.col),
            ],
            is_map_entry=True,
            line=name_tok.line,
            col=name_tok.col,
        )
        msg.nested_messages.append(entry)
        msg.fields.append(
            ProtoField(
                type_name=entry_name,
                field_name=name_tok.value,
                field_number=number,
                label="repeated",
                options=options,
                is_map=True,
                line=name_tok.line,
                col=name_tok.col,
            )
        )

    def _parse_group(
        self,
        nested: List[ProtoMessage],
        label: Optional[str],
        oneof_name: Optional[str],
    ) -> ProtoField:
        """Parse: GROUP IDENT EQUALS NUMBER [options] LBRACE body RBRACE"""
        self._expect(ProtoTokenType.GROUP)
        name_tok = self._expect_name()
        self._expect(ProtoTokenType.EQUALS)
        number = self._parse_field_number()
        options = self._parse_field_options() if self._check(ProtoTokenType.LBRACKET) else {}

        group_msg = ProtoMessage(name=name_tok.value, line=name_tok.line, col=name_tok.col)
        self._expect(ProtoTokenType.LBRACE)
        self._parse_message_body(group_msg)
        self._expect(ProtoTokenType.RBRACE)
        nested.append(group_msg)

        return ProtoField(
            type_name=name_tok.value,
            field_name=name_tok.value.lower(),
            field_number=number,
            label=label,
            options=options,
            oneof_name=oneof_name,
            is_group=True,
            line=name_tok.line,
            col=name_tok.col,
        )

    def _parse_oneof(self, msg: ProtoMessage) -> ProtoOneof:
        """Parse: ONEOF IDENT LBRACE { option | field | group } RBRACE"""
        self._expect(ProtoTokenType.ONEOF)
        name_tok = self._expect_name()
        oneof = ProtoOneof(name=name_tok.value)
        self._expect(ProtoTokenType.LBRACE)

        while not self._check(ProtoTokenType.RBRACE):
            tok = self._peek()
            if tok.type == ProtoTokenType.EOF:
                raise self._error(f"Unexpected end of file inside oneof {oneof.name!r}", tok)
            elif tok.type == ProtoTokenType.OPTION:
                name, value = self._parse_option_statement()
                oneof.options[name] = value
            elif tok.type == ProtoTokenType.SEMICOLON:
                self._advance()
            else:
                proto_field = self._parse_field(
                    msg.fields, msg.nested_messages, oneof_name=oneof.name
                )
                oneof.field_names.append(proto_field.field_name)

        self._expect(ProtoTokenType.RBRACE)
        return oneof

    def _parse_extend(self) -> ProtoExtend:
        """Parse: EXTEND TYPE LBRACE { field | group } RBRACE"""
        ext_tok = self._expect(ProtoTokenType.EXTEND)
        extendee = self._parse_type_ref()
        ext = ProtoExtend(extendee=extendee, line=ext_tok.line, col=ext_tok.col)
        self._expect(ProtoTokenType.LBRACE)

        while not self._check(ProtoTokenType.RBRACE):
            tok = self._peek()
            if tok.type == ProtoTokenType.EOF:
                raise self._error(f"Unexpected end of file inside extend {extendee!r}", tok)
            if tok.type == ProtoTokenType.SEMICOLON:
                self._advance()
                continue
            self._parse_field(ext.fields, ext.nested_messages)

        self._expect(ProtoTokenType.RBRACE)
        return ext

    # -- enum parsing --

    def _parse_enum(self) -> ProtoEnum:
        """Parse: ENUM IDENT LBRACE { option | reserved | IDENT EQUALS [-]NUMBER [options] ; } RBRACE"""
        self._expect(ProtoTokenType.ENUM)
        name_tok = self._expect_name()
        enum = ProtoEnum(name=name_tok.value, line=name_tok.line, col=name_tok.col)
        self._expect(ProtoTokenType.LBRACE)

        while not self._check(ProtoTokenType.RBRACE):
            tok = self._peek()
            if tok.type == ProtoTokenType.EOF:
                raise self._error(f"Unexpected end of file inside enum {enum.name!r}", tok)
            elif tok.type == ProtoTokenType.OPTION:
                name, value = self._parse_option_statement()
                enum.options[name] = value
            elif tok.type == ProtoTokenType.RESERVED:
                self._parse_reserved(_MAX_ENUM_VALUE)
            elif tok.type == ProtoTokenType.SEMICOLON:
                self._advance()
            else:
                value_tok = self._expect_name()
                self._expect(ProtoTokenType.EQUALS)
                number = self._parse_signed_int()
                options = self._parse_field_options() if self._check(ProtoTokenType.LBRACKET) else {}
                self._expect(ProtoTokenType.SEMICOLON)
                enum.values.append(ProtoEnumValue(value_tok.value, number, options))

        self._expect(ProtoTokenType.RBRACE)
        return enum

    # -- service parsing --

    def _parse_service(self) -> ProtoService:
        """Parse: SERVICE IDENT LBRACE { option | rpc } RBRACE"""
        self._expect(ProtoTokenType.SERVICE)
        name_tok = self._expect_name()
        service = ProtoService(name=name_tok.value, line=name_tok.line, col=name_tok.col)
        self._expect(ProtoTokenType.LBRACE)

        while not self._check(ProtoTokenType.RBRACE):
            tok = self._peek()
            if tok.type == ProtoTokenType.OPTION:
                name, value = self._parse_option_statement()
                service.options[name] = value
            elif tok.type == ProtoTokenType.RPC:
                service.rpcs.append(self._parse_rpc())
            elif tok.type == ProtoTokenType.SEMICOLON:
                self._advance()
            else:
                raise self._error(f"Unexpected {tok.value!r} in service {service.name!r}", tok)

        self._expect(ProtoTokenType.RBRACE)
        return service

    def _parse_rpc(self) -> ProtoRpc:
        """Parse: RPC IDENT ( [stream] TYPE ) RETURNS ( [stream] TYPE ) ( ; | { options } )"""
        self._expect(ProtoTokenType.RPC)
        name_tok = self._expect_name()
        client_streaming, input_type = self._parse_rpc_type()
        self._expect(ProtoTokenType.RETURNS)
        server_streaming, output_type = self._parse_rpc_type()
        rpc = ProtoRpc(
            name=name_tok.value,
            input_type=input_type,
            output_type=output_type,
            client_streaming=client_streaming,
            server_streaming=server_streaming,
        )

        if self._check(ProtoTokenType.LBRACE):
            self._advance()
            while not self._check(ProtoTokenType.RBRACE):
                tok = self._peek()
                if tok.type == ProtoTokenType.OPTION:
                    name, value = self._parse_option_statement()
                    rpc.options[name] = value
                elif tok.type == ProtoTokenType.SEMICOLON:
                    self._advance()
                else:
                    raise self._error(f"Unexpected {tok.value!r} in rpc {rpc.name!r}", tok)
            self._expect(ProtoTokenType.RBRACE)
            self._accept(ProtoTokenType.SEMICOLON)
        else:
            self._expect(ProtoTokenType.SEMICOLON)
        return rpc

    def _parse_rpc_type(self) -> Tuple[bool, str]:
        self._expect(ProtoTokenType.LPAREN)
        streaming = False
        nxt = self._peek(1)
        if self._check(ProtoTokenType.STREAM) and (nxt.is_word or nxt.type == ProtoTokenType.DOT):
            self._advance()
            streaming = True
        type_name = self._parse_type_ref()
        self._expect(ProtoTokenType.RPAREN)
        return streaming, type_name

    # -- options --

    def _parse_option_statement(self) -> Tuple[str, object]:
        """Parse: OPTION name EQUALS constant SEMICOLON"""
        self._expect(ProtoTokenType.OPTION)
        name = self._parse_option_name()
        self._expect(ProtoTokenType.EQUALS)
        value = self._parse_constant()
        self._expect(ProtoTokenType.SEMICOLON)
        return name, value

    def _parse_field_options(self) -> OptionMap:
        """Parse: LBRACKET name EQUALS constant { COMMA name EQUALS constant } RBRACKET"""
        options: OptionMap = {}
        self._expect(ProtoTokenType.LBRACKET)
        while True:
            name = self._parse_option_name()
            self._expect(ProtoTokenType.EQUALS)
            options[name] = self._parse_constant()
            if not self._accept(ProtoTokenType.COMMA):
                break
        self._expect(ProtoTokenType.RBRACKET)
        return options

    def _parse_option_name(self) -> str:
        """Option names may mix plain identifiers and (extension.names)."""
        parts: List[str] = []
        while True:
            if self._accept(ProtoTokenType.LPAREN):
                parts.append(f"({self._parse_type_ref()})")
                self._expect(ProtoTokenType.RPAREN)
            else:
                parts.append(self._expect_name().value)
            if not self._accept(ProtoTokenType.DOT):
                break
        return ".".join(parts)

    def _parse_constant(self) -> object:
        tok = self._peek()
        tt = tok.type

        if tt == ProtoTokenType.STRING_LIT:
            return self._parse_string()
        if tt in (ProtoTokenType.MINUS, ProtoTokenType.PLUS):
            self._advance()
            sign = -1 if tt == ProtoTokenType.MINUS else 1
            num_tok = self._peek()
            if num_tok.type == ProtoTokenType.INT:
                return sign * self._int_value(self._advance())
            if num_tok.type == ProtoTokenType.FLOAT:
                return sign * float(self._advance().value)
            if num_tok.value in ("inf", "nan"):
                return sign * float(self._advance().value)
            raise self._error("Expected number after sign", num_tok)
        if tt == ProtoTokenType.INT:
            return self._int_value(self._advance())
        if tt == ProtoTokenType.FLOAT:
            return float(self._advance().value)
        if tt == ProtoTokenType.LBRACE:
            self._skip_aggregate()
            return None
        if tok.is_word:
            ident = self._parse_full_ident()
            if ident == "true":
                return True
            if ident == "false":
                return False
            return ident
        raise self._error(f"Expected constant, got {tt.name} ({tok.value!r})", tok)

    def _skip_aggregate(self) -> None:
        """Skip a text-format aggregate value `{ ... }`, braces balanced."""
        self._expect(ProtoTokenType.LBRACE)
        depth = 1
        while depth > 0:
            tok = self._advance()
            if tok.type == ProtoTokenType.EOF:
                raise self._error("Unexpected end of file inside option value", tok)
            if tok.type == ProtoTokenType.LBRACE:
                depth += 1
            elif tok.type == ProtoTokenType.RBRACE:
                depth -= 1

    # -- ranges --

    def _parse_reserved(self, max_value: int) -> Tuple[List[Tuple[int, int]], List[str]]:
        """Parse: RESERVED ( ranges | strings | identifiers ) SEMICOLON"""
        self._expect(ProtoTokenType.RESERVED)
        ranges: List[Tuple[int, int]] = []
        names: List[str] = []
        if self._check(ProtoTokenType.STRING_LIT) or self._peek().is_word:
            while True:
                if self._check(ProtoTokenType.STRING_LIT):
                    names.append(self._advance().value)
                else:
                    names.append(self._expect_name().value)
                if not self._accept(ProtoTokenType.COMMA):
                    break
        else:
            ranges = self._parse_ranges(max_value)
        self._expect(ProtoTokenType.SEMICOLON)
        return ranges, names

    def _parse_ranges(self, max_value: int) -> List[Tuple[int, int]]:
        """Parse: range { COMMA range } where range is N [TO (N | MAX)]"""
        ranges: List[Tuple[int, int]] = []
        while True:
            start = self._parse_signed_int()
            end = start
            if self._accept(ProtoTokenType.TO):
                if self._accept(ProtoTokenType.MAX):
                    end = max_value
                else:
                    end = self._parse_signed_int()
            ranges.append((start, end))
            if not self._accept(ProtoTokenType.COMMA):
                break
        return ranges

    # -- literal helpers --

    def _parse_string(self) -> str:
        """Parse one or more adjacent string literals, concatenated."""
        parts = [self._expect(ProtoTokenType.STRING_LIT).value]
        while self._check(ProtoTokenType.STRING_LIT):
            parts.append(self._advance().value)
        return "".join(parts)

    def _parse_field_number(self) -> int:
        tok = self._expect(ProtoTokenType.INT)
        number = self._int_value(tok)
        if not 1 <= number <= MAX_FIELD_NUMBER:
            raise self._error(f"Field number {number} out of range", tok)
        return number

    def _parse_signed_int(self) -> int:
        sign = -1 if self._accept(ProtoTokenType.MINUS) else 1
        return sign * self._int_value(self._expect(ProtoTokenType.INT))

    def _int_value(self, tok: ProtoToken) -> int:
        text = tok.value
        try:
            if text[:2] in ("0x", "0X"):
                return int(text[2:], 16)
            if len(text) > 1 and text[0] == "0":
                return int(text[1:], 8)
            return int(text)
        except ValueError:
            raise self._error(f"Invalid integer literal {text!r}", tok) from None

    def _parse_full_ident(self) -> str:
        """Parse: IDENT { DOT IDENT }"""
        parts = [self._expect_name().value]
        while self._accept(ProtoTokenType.DOT):
            parts.append(self._expect_name().value)
        return ".".join(parts)

    def _parse_type_ref(self) -> str:
        """Parse: [DOT] IDENT { DOT IDENT }; a leading dot means fully qualified."""
        prefix = "." if self._accept(ProtoTokenType.DOT) else ""
        return prefix + self._parse_full_ident()

    # -- token helpers --

    def _peek(self, offset: int = 0) -> ProtoToken:
        while len(self._lookahead) <= offset:
            if self._lookahead and self._lookahead[-1].type == ProtoTokenType.EOF:
                return self._lookahead[-1]
            tok = next(self._tokens, None)
            if tok is None:
                last = self._lookahead[-1] if self._lookahead else None
                tok = ProtoToken(
                    ProtoTokenType.EOF, "", last.line if last else 1, last.col if last else 1
                )
            self._lookahead.append(tok)
        return self._lookahead[offset]

    def _advance(self) -> ProtoToken:
        tok = self._peek()
        if tok.type != ProtoTokenType.EOF:
            self._lookahead.popleft()
        return tok

    def _check(self, expected: ProtoTokenType) -> bool:
        return self._peek().type == expected

    def _accept(self, expected: ProtoTokenType) -> Optional[ProtoToken]:
        if self._check(expected):
            return self._advance()
        return None

    def _expect(self, expected: ProtoTokenType) -> ProtoToken:
        tok = self._peek()
        if tok.type != expected:
            raise self._error(
                f"Expected {expected.name}, got {tok.type.name} ({tok.value!r})",
                tok,
            )
        return self._advance()

    def _expect_name(self) -> ProtoToken:
        tok = self._peek()
        if not tok.is_word:
            raise self._error(f"Expected identifier, got {tok.type.name} ({tok.value!r})", tok)
        return self._advance()

    def _error(self, message: str, token: Optional[ProtoToken] = None) -> ParseError:
        if token is None:
            return ParseError(message, self._file_name)
        return ParseError(message, self._file_name, token.line, token.col)

    def _at_end(self) -> bool:
        return self._peek().type == ProtoTokenType.EOF

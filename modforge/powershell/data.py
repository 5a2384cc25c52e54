"""Reader and writer for PowerShell data files (``.psd1``)."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .tokenizer import _SINGLE_QUOTES, PowerShellSyntaxError, Token, TokenKind, tokenize

_BAREWORD_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_INDENT = "    "
_CONSTANTS = {"true": True, "false": False, "null": None}
_QUOTE_CHARS = re.compile(f"([{_SINGLE_QUOTES}])")


def get_key(mapping: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Case-insensitive lookup, matching PowerShell hashtable semantics."""
    if key in mapping:
        return mapping[key]
    lowered = key.lower()
    for candidate, value in mapping.items():
        if candidate.lower() == lowered:
            return value
    return default


class _DataParser:
    def __init__(self, tokens: Sequence[Token]) -> None:
        self._tokens = [token for token in tokens if token.kind is not TokenKind.COMMENT]
        self._index = 0

    def peek(self) -> Optional[Token]:
        if self._index < len(self._tokens):
            return self._tokens[self._index]
        return None

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            raise PowerShellSyntaxError("Unexpected end of data")
        self._index += 1
        return token

    def skip_separators(self, *kinds: TokenKind) -> None:
        while True:
            token = self.peek()
            if token is None or token.kind not in kinds:
                return
            self._index += 1

    def parse_document(self) -> Any:
        self.skip_separators(TokenKind.NEWLINE, TokenKind.SEMI)
        value = self.parse_value()
        self.skip_separators(TokenKind.NEWLINE, TokenKind.SEMI)
        trailing = self.peek()
        if trailing is not None:
            raise PowerShellSyntaxError(f"Unexpected '{trailing.text}' after data", trailing.line)
        return value

    def parse_value(self) -> Any:
        first = self.parse_primary()
        token = self.peek()
        if token is None or token.kind is not TokenKind.COMMA:
            return first
        items = [first]
        while token is not None and token.kind is TokenKind.COMMA:
            self.advance()
            self.skip_separators(TokenKind.NEWLINE)
            items.append(self.parse_primary())
            token = self.peek()
        return items

    def parse_primary(self) -> Any:
        token = self.advance()
        kind = token.kind
        if kind is TokenKind.HASHTABLE:
            return self.parse_hashtable()
        if kind is TokenKind.ARRAY:
            return self.parse_array()
        if kind is TokenKind.STRING:
            if token.nested:
                raise PowerShellSyntaxError("Sub-expressions are not allowed in data files", token.line)
            return _unescape(token.value) if token.expandable else token.value
        if kind is TokenKind.NUMBER:
            return _number(token)
        if kind is TokenKind.VARIABLE and token.value.lower() in _CONSTANTS:
            return _CONSTANTS[token.value.lower()]
        raise PowerShellSyntaxError(f"Unsupported value '{token.text}' in data file", token.line)

    def parse_hashtable(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        while True:
            self.skip_separators(TokenKind.NEWLINE, TokenKind.SEMI)
            token = self.advance()
            if token.kind is TokenKind.RBRACE:
                return result
            if token.kind not in (TokenKind.GENERIC, TokenKind.STRING, TokenKind.NUMBER):
                raise PowerShellSyntaxError(f"Invalid hashtable key '{token.text}'", token.line)
            key = token.value
            equals = self.advance()
            if equals.kind is not TokenKind.OPERATOR or equals.value != "=":
                raise PowerShellSyntaxError(f"Expected '=' after key '{key}'", equals.line)
            self.skip_separators(TokenKind.NEWLINE)
            result[key] = self.parse_value()

    def parse_array(self) -> List[Any]:
        items: List[Any] = []
        while True:
            self.skip_separators(TokenKind.NEWLINE, TokenKind.SEMI, TokenKind.COMMA)
            token = self.peek()
            if token is None:
                raise PowerShellSyntaxError("Unterminated array")
            if token.kind is TokenKind.RPAREN:
                self.advance()
                return items
            items.append(self.parse_primary())


def _unescape(text: str) -> str:
    replacements = {"n": "\n", "r": "\r", "t": "\t", "0": "\0", "`": "`", '"': '"', "$": "$"}
    chunks: List[str] = []
    index = 0
    while index < len(text):
        ch = text[index]
        if ch == "`" and index + 1 < len(text):
            chunks.append(replacements.get(text[index + 1], text[index + 1]))
            index += 2
            continue
        if ch == '"' and index + 1 < len(text) and text[index + 1] == '"':
            chunks.append('"')
            index += 2
            continue
        chunks.append(ch)
        index += 1
    return "".join(chunks)


def _number(token: Token) -> Any:
    text = token.value
    try:
        if text.lower().startswith(("0x", "-0x")):
            return int(text, 16)
        if re.fullmatch(r"-?\d+", text):
            return int(text)
        return float(text)
    except ValueError as exc:
        raise PowerShellSyntaxError(f"Unsupported number '{text}'", token.line) from exc


def loads(text: str) -> Any:
    """Parse the restricted data language used by module manifests."""
    return _DataParser(tokenize(text)).parse_document()


def quote(value: str) -> str:
    """Quote ``value`` as a verbatim string; every single-quote character is doubled."""
    return "'" + _QUOTE_CHARS.sub(r"\1\1", value) + "'"


def _format_key(key: str) -> str:
    return key if _BAREWORD_KEY.match(key) else quote(key)


def _format_scalar(value: Any) -> str:
    if value is None:
        return "$null"
    if isinstance(value, bool):
        return "$true" if value else "$false"
    if isinstance(value, (int, float)):
        return str(value)
    return quote(str(value))


def dumps(value: Any, *, level: int = 0) -> str:
    """Serialize dicts, lists and scalars as PowerShell data, keys in the given order."""
    if isinstance(value, Mapping):
        if not value:
            return "@{}"
        inner = _INDENT * (level + 1)
        lines = ["@{"]
        for key, item in value.items():
            lines.append(f"{inner}{_format_key(str(key))} = {dumps(item, level=level + 1)}")
        lines.append(f"{_INDENT * level}}}")
        return "\n".join(lines)
    if isinstance(value, (list, tuple)):
        if not value:
            return "@()"
        if any(isinstance(item, Mapping) for item in value):
            inner = _INDENT * (level + 1)
            lines = ["@("]
            lines.extend(f"{inner}{dumps(item, level=level + 1)}" for item in value)
            lines.append(f"{_INDENT * level})")
            return "\n".join(lines)
        return "@(" + ", ".join(_format_scalar(item) for item in value) + ")"
    return _format_scalar(value)


__all__ = ["PowerShellSyntaxError", "dumps", "get_key", "loads", "quote"]

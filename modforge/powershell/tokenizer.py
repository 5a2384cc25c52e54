"""Tokenizer for PowerShell source text."""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple


class PowerShellSyntaxError(ValueError):
    """Raised when PowerShell source cannot be tokenized or grouped."""

    def __init__(self, message: str, line: int | None = None) -> None:
        location = f" at line {line}" if line is not None else ""
        super().__init__(f"{message}{location}")
        self.line = line


class TokenKind(str, Enum):
    NEWLINE = "newline"
    COMMENT = "comment"
    VARIABLE = "variable"
    STRING = "string"
    NUMBER = "number"
    GENERIC = "generic"
    PARAMETER = "parameter"
    OPERATOR = "operator"
    MEMBER = "member"
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    SUBEXPR = "$("
    ARRAY = "@("
    HASHTABLE = "@{"
    SEMI = ";"
    COMMA = ","
    PIPE = "|"
    DOT = "."
    COLONCOLON = "::"
    AMP = "&"


@dataclass(frozen=True)
class Token:
    """A lexical token with its absolute source span.

    ``value`` is the decoded content: the text between quotes for strings, the
    name without sigil for parameters, the raw text otherwise. Expandable strings
    keep the token streams of their ``$(...)`` sub-expressions in ``nested``.
    """

    kind: TokenKind
    text: str
    value: str
    start: int
    end: int
    line: int
    space_before: bool = True
    expandable: bool = False
    nested: Tuple[Tuple["Token", ...], ...] = ()

    @property
    def is_literal_string(self) -> bool:
        return self.kind is TokenKind.STRING and not self.nested and (
            not self.expandable or "$" not in self.value
        )


_WHITESPACE = " \t\f\v\u00a0\ufeff"
_SINGLE_QUOTES = "'‘’‚‛"
_DOUBLE_QUOTES = '"“”„'
_GENERIC_STOP = set(" \t\f\v\r\n (){}[];,|&=>\"'") | set(_SINGLE_QUOTES) | set(_DOUBLE_QUOTES)
_NUMBER_DELIMITERS = set(" \t\f\v\r\n )}];,|&=+-*/%<>!")
_NUMBER_RE = re.compile(
    r"(?:0[xX][0-9a-fA-F]+[lL]?|(?:\d+(?:\.\d+)?|\.\d+)(?:[eE][+-]?\d+)?[dDlL]?(?:[kKmMgGtTpP][bB])?)"
)
_IDENT_RE = re.compile(r"[A-Za-z_][\w]*(?::[\w]+)?")
_PARAM_RE = re.compile(r"[-\u2013\u2014][A-Za-z_?][\w\-]*:?")
_MEMBER_RE = re.compile(r"[A-Za-z_][\w]*")
_MEMBER_HOSTS = {
    TokenKind.VARIABLE,
    TokenKind.RPAREN,
    TokenKind.RBRACKET,
    TokenKind.MEMBER,
    TokenKind.STRING,
}
_TWO_CHAR_OPERATORS = {"+=", "*=", "/=", "%=", "++", "==", ">>", "-=", "--", "..", "&&", "||"}


class _Scanner:
    def __init__(
        self,
        text: str,
        start: int = 0,
        limit: int | None = None,
        line_starts: List[int] | None = None,
    ) -> None:
        self.text = text
        self.pos = start
        self.limit = len(text) if limit is None else limit
        self.tokens: List[Token] = []
        self._space = True
        if line_starts is None:
            line_starts = [0] + [match.end() for match in re.finditer("\n", text)]
        self._line_starts = line_starts

    # -- helpers -----------------------------------------------------------------

    def line_of(self, offset: int) -> int:
        return bisect.bisect_right(self._line_starts, offset)

    def peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        if index < self.limit:
            return self.text[index]
        return ""

    def emit(
        self,
        kind: TokenKind,
        start: int,
        end: int,
        value: str | None = None,
        *,
        expandable: bool = False,
        nested: Tuple[Tuple[Token, ...], ...] = (),
    ) -> Token:
        raw = self.text[start:end]
        token = Token(
            kind=kind,
            text=raw,
            value=raw if value is None else value,
            start=start,
            end=end,
            line=self.line_of(start),
            space_before=self._space,
            expandable=expandable,
            nested=nested,
        )
        self.tokens.append(token)
        self._space = False
        self.pos = end
        return token

    def previous(self) -> Optional[Token]:
        return self.tokens[-1] if self.tokens else None

    # -- main loop ---------------------------------------------------------------

    def scan(self, *, subexpression: bool = False) -> List[Token]:
        depth = 0
        while self.pos < self.limit:
            ch = self.text[self.pos]
            nxt = self.peek(1)

            if ch in _WHITESPACE:
                self.pos += 1
                self._space = True
            elif ch == "\r":
                self.pos += 1
            elif ch == "\n":
                self.emit(TokenKind.NEWLINE, self.pos, self.pos + 1)
                self._space = True
            elif ch == "`" and nxt in ("\n", "\r"):
                self.pos += 2 if nxt == "\n" or self.peek(2) != "\n" else 3
                self._space = True
            elif ch == "#":
                end = self.text.find("\n", self.pos, self.limit)
                end = self.limit if end == -1 else end
                self.emit(TokenKind.COMMENT, self.pos, end)
                self._space = True
            elif ch == "<" and nxt == "#":
                end = self.text.find("#>", self.pos + 2, self.limit)
                if end == -1:
                    raise PowerShellSyntaxError("Unterminated block comment", self.line_of(self.pos))
                self.emit(TokenKind.COMMENT, self.pos, end + 2)
                self._space = True
            elif ch == "@" and nxt and (nxt in _SINGLE_QUOTES or nxt in _DOUBLE_QUOTES) and self._at_here_string():
                self._scan_here_string(expandable=nxt in _DOUBLE_QUOTES)
            elif ch in _SINGLE_QUOTES:
                self._scan_single_quoted()
            elif ch in _DOUBLE_QUOTES:
                self._scan_double_quoted()
            elif ch == "@" and nxt == "(":
                self.emit(TokenKind.ARRAY, self.pos, self.pos + 2)
                depth += 1
            elif ch == "@" and nxt == "{":
                self.emit(TokenKind.HASHTABLE, self.pos, self.pos + 2)
            elif ch == "@" and nxt and (nxt.isalnum() or nxt in "_?"):
                match = _IDENT_RE.match(self.text, self.pos + 1, self.limit)
                end = match.end() if match else self.pos + 2
                self.emit(TokenKind.VARIABLE, self.pos, end, self.text[self.pos + 1 : end])
            elif ch == "$" and nxt == "(":
                self.emit(TokenKind.SUBEXPR, self.pos, self.pos + 2)
                depth += 1
            elif ch == "$":
                self._scan_variable()
            elif ch == "(":
                self.emit(TokenKind.LPAREN, self.pos, self.pos + 1)
                depth += 1
            elif ch == ")":
                if subexpression and depth == 0:
                    self.pos += 1
                    return self.tokens
                self.emit(TokenKind.RPAREN, self.pos, self.pos + 1)
                depth -= 1
            elif ch == "{":
                self.emit(TokenKind.LBRACE, self.pos, self.pos + 1)
            elif ch == "}":
                self.emit(TokenKind.RBRACE, self.pos, self.pos + 1)
            elif ch == "[":
                self.emit(TokenKind.LBRACKET, self.pos, self.pos + 1)
            elif ch == "]":
                self.emit(TokenKind.RBRACKET, self.pos, self.pos + 1)
            elif ch == ";":
                self.emit(TokenKind.SEMI, self.pos, self.pos + 1)
                self._space = True
            elif ch == ",":
                self.emit(TokenKind.COMMA, self.pos, self.pos + 1)
                self._space = True
            elif ch == "|":
                if nxt == "|":
                    self.emit(TokenKind.OPERATOR, self.pos, self.pos + 2)
                else:
                    self.emit(TokenKind.PIPE, self.pos, self.pos + 1)
                self._space = True
            elif ch == "&":
                if nxt == "&":
                    self.emit(TokenKind.OPERATOR, self.pos, self.pos + 2)
                else:
                    self.emit(TokenKind.AMP, self.pos, self.pos + 1)
                self._space = True
            elif ch == ":" and nxt == ":":
                self.emit(TokenKind.COLONCOLON, self.pos, self.pos + 2)
                self._scan_member()
            elif ch == ".":
                self._scan_dot()
            elif ch in "-\u2013\u2014":
                self._scan_dash()
            elif ch in "=!+*/%<>":
                pair = ch + nxt
                if pair in _TWO_CHAR_OPERATORS or (ch in "!<>" and nxt == "="):
                    self.emit(TokenKind.OPERATOR, self.pos, self.pos + 2)
                else:
                    self.emit(TokenKind.OPERATOR, self.pos, self.pos + 1)
                self._space = True
            elif ch.isdigit():
                self._scan_number_or_generic()
            else:
                self._scan_generic()

        if subexpression:
            raise PowerShellSyntaxError("Unterminated sub-expression", self.line_of(self.limit))
        return self.tokens

    # -- token scanners ----------------------------------------------------------

    def _at_here_string(self) -> bool:
        index = self.pos + 2
        while index < self.limit and self.text[index] in " \t":
            index += 1
        return index >= self.limit or self.text[index] in "\r\n"

    def _scan_here_string(self, *, expandable: bool) -> None:
        start = self.pos
        closer = '"@' if expandable else "'@"
        newline = self.text.find("\n", start, self.limit)
        if newline == -1:
            raise PowerShellSyntaxError(f"Unterminated here-string (missing {closer})", self.line_of(start))
        body_start = newline + 1
        quotes = _DOUBLE_QUOTES if expandable else _SINGLE_QUOTES
        match = re.compile(f"^[{quotes}]@", re.M).search(self.text, body_start, self.limit)
        if match is None:
            raise PowerShellSyntaxError(f"Unterminated here-string (missing {closer})", self.line_of(start))
        body_end = match.start()
        content = self.text[body_start:body_end]
        if content.endswith("\n"):
            content = content[:-1]
        if content.endswith("\r"):
            content = content[:-1]
        nested: Tuple[Tuple[Token, ...], ...] = ()
        if expandable:
            nested = self._nested_in_range(body_start, body_end)
        self.emit(
            TokenKind.STRING,
            start,
            match.end(),
            content,
            expandable=expandable,
            nested=nested,
        )

    def _nested_in_range(self, start: int, end: int) -> Tuple[Tuple[Token, ...], ...]:
        nested: List[Tuple[Token, ...]] = []
        index = start
        while index < end:
            ch = self.text[index]
            if ch == "`":
                index += 2
                continue
            if ch == "$" and index + 1 < end and self.text[index + 1] == "(":
                inner = _Scanner(self.text, index + 2, end, self._line_starts)
                nested.append(tuple(inner.scan(subexpression=True)))
                index = inner.pos
                continue
            index += 1
        return tuple(nested)

    def _scan_single_quoted(self) -> None:
        start = self.pos
        index = start + 1
        chunks: List[str] = []
        while index < self.limit:
            ch = self.text[index]
            if ch in _SINGLE_QUOTES:
                if index + 1 < self.limit and self.text[index + 1] in _SINGLE_QUOTES:
                    chunks.append(self.text[index + 1])
                    index += 2
                    continue
                self.emit(TokenKind.STRING, start, index + 1, "".join(chunks))
                return
            chunks.append(ch)
            index += 1
        raise PowerShellSyntaxError("Unterminated string literal", self.line_of(start))

    def _scan_double_quoted(self) -> None:
        start = self.pos
        index = start + 1
        nested: List[Tuple[Token, ...]] = []
        while index < self.limit:
            ch = self.text[index]
            if ch == "`":
                index += 2
                continue
            if ch in _DOUBLE_QUOTES:
                if index + 1 < self.limit and self.text[index + 1] in _DOUBLE_QUOTES:
                    index += 2
                    continue
                self.emit(
                    TokenKind.STRING,
                    start,
                    index + 1,
                    self.text[start + 1 : index],
                    expandable=True,
                    nested=tuple(nested),
                )
                return
            if ch == "$" and index + 1 < self.limit and self.text[index + 1] == "(":
                inner = _Scanner(self.text, index + 2, self.limit, self._line_starts)
                nested.append(tuple(inner.scan(subexpression=True)))
                index = inner.pos
                continue
            index += 1
        raise PowerShellSyntaxError("Unterminated string literal", self.line_of(start))

    def _scan_variable(self) -> None:
        start = self.pos
        nxt = self.peek(1)
        if nxt == "{":
            end = self.text.find("}", start + 2, self.limit)
            if end == -1:
                raise PowerShellSyntaxError("Unterminated braced variable", self.line_of(start))
            self.emit(TokenKind.VARIABLE, start, end + 1, self.text[start + 2 : end])
            return
        if nxt in ("$", "?", "^"):
            self.emit(TokenKind.VARIABLE, start, start + 2, nxt)
            return
        match = _IDENT_RE.match(self.text, start + 1, self.limit)
        if match is None:
            self._scan_generic()
            return
        self.emit(TokenKind.VARIABLE, start, match.end(), match.group(0))

    def _scan_member(self) -> None:
        match = _MEMBER_RE.match(self.text, self.pos, self.limit)
        if match is not None:
            self.emit(TokenKind.MEMBER, self.pos, match.end())

    def _scan_dot(self) -> None:
        start = self.pos
        nxt = self.peek(1)
        prev = self.previous()
        if nxt == ".":
            self.emit(TokenKind.OPERATOR, start, start + 2)
            self._space = True
            return
        if prev is not None and not self._space and prev.kind in _MEMBER_HOSTS:
            self.emit(TokenKind.DOT, start, start + 1)
            self._scan_member()
            return
        if nxt == "" or nxt in _WHITESPACE or nxt in "\r\n":
            self.emit(TokenKind.DOT, start, start + 1)
            self._space = True
            return
        if nxt.isdigit():
            self._scan_number_or_generic()
            return
        self._scan_generic()

    def _scan_dash(self) -> None:
        start = self.pos
        nxt = self.peek(1)
        if nxt and (nxt.isalpha() or nxt in "_?"):
            match = _PARAM_RE.match(self.text, start, self.limit)
            if match is not None:
                name = match.group(0)[1:].rstrip(":")
                self.emit(TokenKind.PARAMETER, start, match.end(), name)
                return
        if nxt.isdigit() or (nxt == "." and self.peek(2).isdigit()):
            self._scan_number_or_generic(offset=1)
            return
        if nxt in ("-", "="):
            self.emit(TokenKind.OPERATOR, start, start + 2)
        else:
            self.emit(TokenKind.OPERATOR, start, start + 1)
        self._space = True

    def _scan_number_or_generic(self, offset: int = 0) -> None:
        start = self.pos
        match = _NUMBER_RE.match(self.text, start + offset, self.limit)
        if match is not None:
            end = match.end()
            following = self.text[end] if end < self.limit else ""
            dot_range = following == "." and end + 1 < self.limit and self.text[end + 1] == "."
            if following == "" or following in _NUMBER_DELIMITERS or dot_range:
                self.emit(TokenKind.NUMBER, start, end)
                return
        self._scan_generic()

    def _scan_generic(self) -> None:
        start = self.pos
        index = start
        chunks: List[str] = []
        while index < self.limit:
            ch = self.text[index]
            if ch == "`":
                if index + 1 < self.limit and self.text[index + 1] not in "\r\n":
                    chunks.append(self.text[index + 1])
                    index += 2
                    continue
                break
            if ch in _GENERIC_STOP:
                break
            chunks.append(ch)
            index += 1
        if index == start:
            index = start + 1
            chunks = [self.text[start]]
        self.emit(TokenKind.GENERIC, start, index, "".join(chunks))


def tokenize(text: str) -> List[Token]:
    """Tokenize PowerShell source text.

    Raises PowerShellSyntaxError for unterminated strings, comments and
    sub-expressions.
    """
    return _Scanner(text).scan()


__all__ = ["PowerShellSyntaxError", "Token", "TokenKind", "tokenize"]

"""
Lexer
=====

Converts raw rule DSL text into a stream of tokens with source positions.

The lexer is total: it never raises. Characters it cannot classify become
``INVALID`` tokens that the parser reports when it reaches them. Address
literals (IPv4, IPv6, MAC) are recognized by shape here so the parser never
has to re-derive a literal's kind from context.
"""

from dataclasses import dataclass
from enum import Enum
import re
from typing import List

from .vocabulary import RESERVED_WORDS


class TokenKind(Enum):
    """Token kinds produced by the lexer."""

    KEYWORD = "KEYWORD"
    IDENT = "IDENT"
    NUMBER = "NUMBER"
    IPV4 = "IPV4"
    IPV6 = "IPV6"
    MAC = "MAC"
    STRING = "STRING"
    PUNCT = "PUNCT"
    INVALID = "INVALID"
    EOF = "EOF"


@dataclass(frozen=True)
class Token:
    """
    A single token of rule DSL source.

    Attributes:
        kind: Kind of token
        lexeme: Source text (unescaped contents for strings)
        line: Line number (1-indexed)
        column: Column number (1-indexed)
    """

    kind: TokenKind
    lexeme: str
    line: int
    column: int

    def is_keyword(self, *words: str) -> bool:
        return self.kind is TokenKind.KEYWORD and (not words or self.lexeme in words)

    def is_punct(self, char: str) -> bool:
        return self.kind is TokenKind.PUNCT and self.lexeme == char

    def __repr__(self) -> str:
        return f"Token({self.kind.value}, {self.lexeme!r}, {self.line}:{self.column})"


PUNCTUATION = frozenset(";-")
QUOTES = frozenset("'\"")

# Maximal run of characters that may form a word or an address literal
_RUN = re.compile(r"[0-9A-Za-z_:./]+")
_MAC = re.compile(r"[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}")
_IPV6 = re.compile(r"[0-9A-Fa-f:]*:[0-9A-Fa-f:]*:[0-9A-Fa-f:]*(?:\d{1,3}(?:\.\d{1,3}){3})?(?:/\d{1,3})?")
_IPV4 = re.compile(r"\d{1,3}(?:\.\d{1,3}){3}(?:/\d{1,2})?")
_DECIMAL = re.compile(r"\d+(?:\.\d+)?")
_HEX = re.compile(r"0[xX][0-9A-Fa-f]+")
_WORD = re.compile(r"[0-9A-Za-z_]+")

_ESCAPES = {"n": "\n", "t": "\t"}


def _classify_run(run: str) -> TokenKind:
    if ":" in run:
        if _MAC.fullmatch(run):
            return TokenKind.MAC
        if _IPV6.fullmatch(run):
            return TokenKind.IPV6
        return TokenKind.INVALID
    if "." in run or "/" in run:
        if _IPV4.fullmatch(run):
            return TokenKind.IPV4
        if _DECIMAL.fullmatch(run):
            return TokenKind.NUMBER
        return TokenKind.INVALID
    if _DECIMAL.fullmatch(run) or _HEX.fullmatch(run):
        return TokenKind.NUMBER
    if run in RESERVED_WORDS:
        return TokenKind.KEYWORD
    if _WORD.fullmatch(run):
        return TokenKind.IDENT
    return TokenKind.INVALID


class Lexer:
    """Single-use scanner over one source text."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.line = 1
        self.column = 1
        self.tokens: List[Token] = []

    def _advance(self, count: int) -> None:
        self.pos += count
        self.column += count

    def _emit(self, kind: TokenKind, lexeme: str, line: int, column: int) -> None:
        self.tokens.append(Token(kind, lexeme, line, column))

    def _scan_string(self) -> None:
        line, column = self.line, self.column
        quote = self.text[self.pos]
        chars: List[str] = []
        i = self.pos + 1
        while i < len(self.text) and self.text[i] != "\n":
            ch = self.text[i]
            if ch == "\\" and i + 1 < len(self.text) and self.text[i + 1] != "\n":
                chars.append(_ESCAPES.get(self.text[i + 1], self.text[i + 1]))
                i += 2
                continue
            if ch == quote:
                self._emit(TokenKind.STRING, "".join(chars), line, column)
                self._advance(i + 1 - self.pos)
                return
            chars.append(ch)
            i += 1
        # Unterminated: the raw text up to end of line
        self._emit(TokenKind.INVALID, self.text[self.pos:i], line, column)
        self._advance(i - self.pos)

    def tokenize(self) -> List[Token]:
        text = self.text
        while self.pos < len(text):
            ch = text[self.pos]
            if ch == "\n":
                self.pos += 1
                self.line += 1
                self.column = 1
            elif ch.isspace():
                self._advance(1)
            elif ch == "#":
                end = text.find("\n", self.pos)
                self._advance((len(text) if end < 0 else end) - self.pos)
            elif ch in QUOTES:
                self._scan_string()
            elif ch in PUNCTUATION:
                self._emit(TokenKind.PUNCT, ch, self.line, self.column)
                self._advance(1)
            else:
                match = _RUN.match(text, self.pos)
                if match is None:
                    self._emit(TokenKind.INVALID, ch, self.line, self.column)
                    self._advance(1)
                    continue
                run = match.group()
                self._emit(_classify_run(run), run, self.line, self.column)
                self._advance(len(run))
        self._emit(TokenKind.EOF, "", self.line, self.column)
        return self.tokens


def tokenize(text: str) -> List[Token]:
    """
    Convert DSL text into tokens.

    Args:
        text: Raw DSL source

    Returns:
        Token list, always terminated by an EOF token
    """
    return Lexer(text).tokenize()

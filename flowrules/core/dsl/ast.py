"""
Rule AST
========

Frozen node types for a parsed rule document. Statements form a closed sum
type (``Statement``); stages dispatch on the concrete class and never
subclass these nodes.

The parser fills in the source-level fields. The validator returns copies
with ``values`` populated (resolved ints, canonical address strings, masks)
and marks the document ``annotated``. Each stage adds its error count to
``Document.error_count``; the emitter only accepts annotated documents with
no errors.
"""

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from .lexer import Token, TokenKind
from .vocabulary import ActionKind, MatchField


@dataclass(frozen=True)
class Literal:
    """An operand exactly as written in the source."""

    kind: TokenKind
    text: str
    line: int
    column: int

    @classmethod
    def from_token(cls, token: Token) -> "Literal":
        return cls(token.kind, token.lexeme, token.line, token.column)


@dataclass(frozen=True)
class MatchClause:
    field: MatchField
    negated: bool
    joined_by_or: bool
    operands: Tuple[Literal, ...]
    line: int
    column: int
    values: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    operands: Tuple[Literal, ...]
    line: int
    column: int
    values: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class RuleGroup:
    """AND/OR-combined match clauses closed by exactly one action."""

    matches: Tuple[MatchClause, ...]
    action: Action
    line: int
    column: int

    @property
    def unconditional(self) -> bool:
        return not self.matches


@dataclass(frozen=True)
class CapabilityDecl:
    name: str
    id: Optional[Literal]
    rules: Tuple[RuleGroup, ...]
    line: int
    column: int
    id_value: Optional[int] = None


@dataclass(frozen=True)
class EnumEntry:
    value: Literal
    label: str
    line: int
    column: int


@dataclass(frozen=True)
class TagDecl:
    name: str
    id: Optional[Literal]
    default: Optional[Literal]
    enums: Tuple[EnumEntry, ...]
    flags: Tuple[EnumEntry, ...]
    line: int
    column: int
    id_value: Optional[int] = None
    default_value: Optional[int] = None
    enum_values: Tuple[Tuple[str, int], ...] = ()
    flag_values: Tuple[Tuple[str, int], ...] = ()


Statement = Union[RuleGroup, CapabilityDecl, TagDecl]


@dataclass(frozen=True)
class Document:
    statements: Tuple[Statement, ...] = ()
    annotated: bool = False
    # Errors reported by the stages that produced this document
    error_count: int = 0

    @property
    def rules(self) -> Tuple[RuleGroup, ...]:
        return tuple(s for s in self.statements if isinstance(s, RuleGroup))

    @property
    def capabilities(self) -> Tuple[CapabilityDecl, ...]:
        return tuple(s for s in self.statements if isinstance(s, CapabilityDecl))

    @property
    def tags(self) -> Tuple[TagDecl, ...]:
        return tuple(s for s in self.statements if isinstance(s, TagDecl))

"""
DSL Parser
==========

Recursive-descent parser turning the token stream into a rule ``Document``.

Statements are dispatched on their leading keyword: an action keyword starts
a rule, ``cap`` a capability and ``tag`` a tag declaration. Parsing is
resilient: a malformed statement produces exactly one error diagnostic, the
parser skips through the next ``;`` and carries on, so a single pass reports
every broken statement in the document.

A rule is written action first: ``drop not ethertype arp and not ethertype
ipv4;``. Inside a rule ``and`` and ``or`` join adjacent match clauses and
``or`` sets the controller's ``or`` flag on the clause that follows it. The
controller folds the flags left to right with no precedence, so ``a or b and
c`` means ``(a or b) and c``. A ``;`` ends the rule and the next rule starts a
fresh match set.

A statement may also start with ``raw '<json>'``: the object is emitted
verbatim as the rule's action. Anywhere else ``raw`` is a match clause.
"""

from typing import List, Mapping, Optional, Tuple

from flowrules.config.logging import get_logger

from .ast import (
    Action,
    CapabilityDecl,
    Document,
    EnumEntry,
    Literal,
    MatchClause,
    RuleGroup,
    Statement,
    TagDecl,
)
from .diagnostics import Diagnostic, DiagnosticCode, error, warning
from .lexer import Token, TokenKind
from .vocabulary import (
    ACTION_BY_KEYWORD,
    DECLARATIONS,
    MATCH_BY_KEYWORD,
    OPERAND_NAMES,
    STATEMENT_ACTIONS,
)

logger = get_logger(__name__)

LITERAL_KINDS = frozenset(
    {
        TokenKind.IDENT,
        TokenKind.NUMBER,
        TokenKind.IPV4,
        TokenKind.IPV6,
        TokenKind.MAC,
        TokenKind.STRING,
    }
)


class ParseFailure(Exception):
    """Abandons the current statement; carries the diagnostic to report."""

    def __init__(self, diagnostic: Diagnostic):
        super().__init__(diagnostic.message)
        self.diagnostic = diagnostic


def _describe(token: Token) -> str:
    if token.kind is TokenKind.EOF:
        return "end of input"
    if token.kind is TokenKind.KEYWORD:
        return f"keyword '{token.lexeme}'"
    if token.kind is TokenKind.PUNCT:
        return f"'{token.lexeme}'"
    return f"{token.kind.value.lower()} '{token.lexeme}'"


class Parser:
    """Single-use parser over one token list."""

    def __init__(self, tokens: List[Token]):
        if not tokens or tokens[-1].kind is not TokenKind.EOF:
            raise ValueError("token stream must end with an EOF token")
        self.tokens = tokens
        self.pos = 0
        self.diagnostics: List[Diagnostic] = []
        self.logger = logger.bind(component="parser")

    # Token access

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        token = self.peek()
        if token.kind is not TokenKind.EOF:
            self.pos += 1
        return token

    def expect(self, kind: TokenKind, what: str) -> Token:
        token = self.peek()
        if token.kind is not kind:
            raise self._unexpected(token, f"expected {what}")
        return self.advance()

    # Diagnostics

    def _unexpected(self, token: Token, expected: str) -> ParseFailure:
        if token.kind is TokenKind.INVALID:
            return self._invalid(token)
        if token.kind is TokenKind.EOF:
            return ParseFailure(
                error(DiagnosticCode.UNEXPECTED_END, f"{expected}, found end of input",
                      token.line, token.column)
            )
        return ParseFailure(
            error(DiagnosticCode.UNEXPECTED_TOKEN, f"{expected}, found {_describe(token)}",
                  token.line, token.column)
        )

    def _invalid(self, token: Token) -> ParseFailure:
        if token.lexeme[:1] in ("'", '"'):
            return ParseFailure(
                error(DiagnosticCode.UNTERMINATED_STRING, "unterminated string literal",
                      token.line, token.column)
            )
        return ParseFailure(
            error(DiagnosticCode.INVALID_CHARACTER, f"unrecognized input '{token.lexeme}'",
                  token.line, token.column)
        )

    def _synchronize(self) -> None:
        """Skip through the next ';' (or to end of input)."""
        while True:
            token = self.advance()
            if token.kind is TokenKind.EOF or token.is_punct(";"):
                return

    # Grammar

    def parse_document(self) -> Document:
        statements: List[Statement] = []
        while self.peek().kind is not TokenKind.EOF:
            try:
                self._statement(statements)
            except ParseFailure as failure:
                self.diagnostics.append(failure.diagnostic)
                self._synchronize()
        return Document(
            tuple(statements),
            error_count=sum(1 for d in self.diagnostics if d.is_error),
        )

    def _statement(self, out: List[Statement]) -> None:
        token = self.peek()
        if token.is_punct(";"):
            self.advance()
        elif token.is_keyword("cap"):
            out.append(self._capability())
        elif token.is_keyword("tag"):
            out.append(self._tag())
        elif token.is_keyword(*STATEMENT_ACTIONS):
            self._rule_statement(out)
        else:
            raise self._unexpected(token, "expected an action, 'cap' or 'tag'")

    def _rule_statement(self, out: List) -> None:
        """Parse groups up to and including ';'.

        An action keyword where another clause could start closes the
        current group and begins the next one.
        """
        while True:
            out.append(self._rule_group())
            token = self.peek()
            if token.is_punct(";"):
                self.advance()
                return
            self.diagnostics.append(
                warning(DiagnosticCode.MISSING_TERMINATOR,
                        f"action '{token.lexeme}' starts a new rule; missing ';' before it",
                        token.line, token.column)
            )

    def _rule_group(self) -> RuleGroup:
        action_token = self.advance()
        spec = STATEMENT_ACTIONS[action_token.lexeme]
        action = Action(spec.kind, self._operands(), action_token.line, action_token.column)

        matches: List[MatchClause] = []
        negate: Optional[Token] = None
        joiner: Optional[Token] = None
        while True:
            token = self.peek()
            pending = negate or joiner
            if token.is_punct(";") or token.is_keyword(*ACTION_BY_KEYWORD):
                if pending is not None:
                    raise self._unexpected(token, f"expected a match field after '{pending.lexeme}'")
                break
            if token.kind is TokenKind.EOF:
                raise self._unexpected(token, "expected ';' to end the rule")
            if token.is_keyword("not"):
                if negate is not None:
                    raise self._unexpected(token, "expected a match field after 'not'")
                negate = self.advance()
            elif token.is_keyword("and", "or"):
                if not matches or pending is not None:
                    raise self._unexpected(token, f"'{token.lexeme}' must join two match clauses")
                joiner = self.advance()
            elif token.is_keyword(*MATCH_BY_KEYWORD):
                self.advance()
                match_spec = MATCH_BY_KEYWORD[token.lexeme]
                operands = self._operands(
                    OPERAND_NAMES.get(match_spec.operand), match_spec.max_operands
                )
                matches.append(
                    MatchClause(
                        field=match_spec.field,
                        negated=negate is not None,
                        joined_by_or=joiner is not None and joiner.lexeme == "or",
                        operands=operands,
                        line=(negate or token).line,
                        column=(negate or token).column,
                    )
                )
                negate = joiner = None
            else:
                raise self._unexpected(token, "expected a match field, 'and', 'or', 'not' or ';'")

        return RuleGroup(tuple(matches), action, action_token.line, action_token.column)

    def _operands(
        self, names: Optional[Mapping[str, int]] = None, limit: Optional[int] = None
    ) -> Tuple[Literal, ...]:
        """Consume literal operands greedily up to the next keyword or ';'.

        ``a-b`` yields two operands; ``-n`` yields one negative number.
        """
        operands: List[Literal] = []
        while True:
            token = self.peek()
            if token.kind in LITERAL_KINDS:
                self.advance()
                operands.append(Literal.from_token(token))
                if (
                    token.kind is TokenKind.NUMBER
                    and self.peek().is_punct("-")
                    and self.peek(1).kind is TokenKind.NUMBER
                ):
                    self.advance()
                    operands.append(Literal.from_token(self.advance()))
            elif token.is_punct("-") and self.peek(1).kind is TokenKind.NUMBER:
                self.advance()
                number = self.advance()
                operands.append(Literal(TokenKind.NUMBER, "-" + number.lexeme, token.line, token.column))
            elif (
                names is not None
                and token.kind is TokenKind.KEYWORD
                and token.lexeme in names
                and (limit is None or len(operands) < limit)
            ):
                self.advance()
                operands.append(Literal.from_token(token))
            elif token.kind is TokenKind.INVALID:
                raise self._invalid(token)
            else:
                return tuple(operands)

    def _capability(self) -> CapabilityDecl:
        cap_token = self.advance()
        name = self.expect(TokenKind.IDENT, "a capability name").lexeme
        id_literal = self._id_attributes()

        rules: List[RuleGroup] = []
        while True:
            token = self.peek()
            if token.is_punct(";"):
                self.advance()
                break
            if token.kind is TokenKind.EOF:
                self.diagnostics.append(
                    error(DiagnosticCode.UNTERMINATED_CAPABILITY,
                          f"capability '{name}' is missing its closing ';'",
                          cap_token.line, cap_token.column)
                )
                break
            try:
                if token.is_keyword(*DECLARATIONS):
                    raise ParseFailure(
                        error(DiagnosticCode.NESTED_DECLARATION,
                              f"'{token.lexeme}' cannot be declared inside capability '{name}'",
                              token.line, token.column)
                    )
                if not token.is_keyword(*STATEMENT_ACTIONS):
                    raise self._unexpected(token, f"expected a rule or ';' to close capability '{name}'")
                self._rule_statement(rules)
            except ParseFailure as failure:
                self.diagnostics.append(failure.diagnostic)
                self._synchronize()

        return CapabilityDecl(name, id_literal, tuple(rules), cap_token.line, cap_token.column)

    def _id_attributes(self) -> Optional[Literal]:
        id_literal: Optional[Literal] = None
        while self.peek().is_keyword("id"):
            keyword = self.advance()
            value = self.expect(TokenKind.NUMBER, "a numeric id after 'id'")
            if id_literal is not None:
                raise ParseFailure(
                    error(DiagnosticCode.UNEXPECTED_TOKEN, "'id' given more than once",
                          keyword.line, keyword.column)
                )
            id_literal = Literal.from_token(value)
        return id_literal

    def _tag(self) -> TagDecl:
        tag_token = self.advance()
        name = self.expect(TokenKind.IDENT, "a tag name").lexeme
        id_literal: Optional[Literal] = None
        default: Optional[Literal] = None
        enums: List[EnumEntry] = []
        flags: List[EnumEntry] = []

        while True:
            token = self.peek()
            if token.is_punct(";"):
                self.advance()
                break
            if token.is_keyword("id"):
                if id_literal is not None:
                    raise ParseFailure(
                        error(DiagnosticCode.UNEXPECTED_TOKEN, "'id' given more than once",
                              token.line, token.column)
                    )
                id_literal = self._id_attributes()
            elif token.is_keyword("default"):
                self.advance()
                value = self.peek()
                if value.kind not in (TokenKind.NUMBER, TokenKind.IDENT) or default is not None:
                    raise self._unexpected(value, "expected one default value or enum label")
                default = Literal.from_token(self.advance())
            elif token.is_keyword("enum", "flag"):
                keyword = self.advance()
                value = self.expect(TokenKind.NUMBER, f"a number after '{keyword.lexeme}'")
                label = self.expect(TokenKind.IDENT, f"a label after '{keyword.lexeme} {value.lexeme}'")
                entry = EnumEntry(Literal.from_token(value), label.lexeme, keyword.line, keyword.column)
                (enums if keyword.lexeme == "enum" else flags).append(entry)
            else:
                raise self._unexpected(token, "expected 'id', 'default', 'enum', 'flag' or ';'")

        return TagDecl(
            name=name,
            id=id_literal,
            default=default,
            enums=tuple(enums),
            flags=tuple(flags),
            line=tag_token.line,
            column=tag_token.column,
        )


def parse(tokens: List[Token]) -> Tuple[Document, List[Diagnostic]]:
    """
    Parse a token stream into a rule document.

    Args:
        tokens: Output of ``tokenize``

    Returns:
        Tuple of (best-effort document, syntax diagnostics in source order)
    """
    parser = Parser(tokens)
    document = parser.parse_document()
    parser.logger.debug(
        "Parsed rule document",
        statements=len(document.statements),
        diagnostics=len(parser.diagnostics),
    )
    return document, parser.diagnostics

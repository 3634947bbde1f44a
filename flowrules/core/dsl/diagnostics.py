"""
Diagnostics
===========

Diagnostic codes and constructors shared by every compiler stage.

Stages never raise for user mistakes; they append diagnostics to a list they
own and return it alongside their result.
"""

from enum import Enum
from typing import Iterable, List

from flowrules.models.schemas import Diagnostic, DiagnosticCategory, Severity


class DiagnosticCode(str, Enum):
    """Namespaced diagnostic codes; the prefix names the category."""

    # Lexer
    INVALID_CHARACTER = "lex.invalid-character"
    UNTERMINATED_STRING = "lex.unterminated-string"

    # Parser
    UNEXPECTED_TOKEN = "syntax.unexpected-token"
    UNEXPECTED_END = "syntax.unexpected-end"
    MISSING_TERMINATOR = "syntax.missing-terminator"
    UNTERMINATED_CAPABILITY = "syntax.unterminated-capability"
    NESTED_DECLARATION = "syntax.nested-declaration"

    # Validator
    OPERAND_COUNT = "semantic.operand-count"
    OPERAND_TYPE = "semantic.operand-type"
    OUT_OF_RANGE = "semantic.out-of-range"
    INVERTED_RANGE = "semantic.inverted-range"
    UNKNOWN_NAME = "semantic.unknown-name"
    UNKNOWN_TAG = "semantic.unknown-tag"
    FORWARD_REFERENCE = "semantic.forward-reference"
    UNKNOWN_LABEL = "semantic.unknown-label"
    MISSING_ID = "semantic.missing-id"
    DUPLICATE_ID = "semantic.duplicate-id"
    DUPLICATE_NAME = "semantic.duplicate-name"
    DUPLICATE_LABEL = "semantic.duplicate-label"
    DUPLICATE_VALUE = "semantic.duplicate-value"
    INVALID_RAW = "semantic.invalid-raw"
    UNREACHABLE_RULE = "semantic.unreachable-rule"

    # Decompiler
    UNKNOWN_RULE_TYPE = "schema.unknown-rule-type"
    INVALID_RULE_SHAPE = "schema.invalid-rule-shape"
    DANGLING_MATCH = "schema.dangling-match"
    INVALID_DECLARATION = "schema.invalid-declaration"
    UNDECLARED_TAG = "schema.undeclared-tag"
    LEADING_OR = "schema.leading-or"

    @property
    def category(self) -> DiagnosticCategory:
        return DiagnosticCategory(self.value.split(".", 1)[0])


def error(code: DiagnosticCode, message: str, line: int = 0, column: int = 0) -> Diagnostic:
    return Diagnostic(
        severity=Severity.ERROR, line=line, column=column, message=message, code=code.value
    )


def warning(code: DiagnosticCode, message: str, line: int = 0, column: int = 0) -> Diagnostic:
    return Diagnostic(
        severity=Severity.WARNING, line=line, column=column, message=message, code=code.value
    )


def has_errors(diagnostics: Iterable[Diagnostic]) -> bool:
    return any(d.is_error for d in diagnostics)


def in_source_order(diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
    """Stable sort by position; diagnostics at the same spot keep stage order."""
    return sorted(diagnostics, key=lambda d: (d.line, d.column))


__all__ = [
    "Diagnostic",
    "DiagnosticCategory",
    "DiagnosticCode",
    "Severity",
    "error",
    "has_errors",
    "in_source_order",
    "warning",
]

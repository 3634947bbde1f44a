"""
DSL Processing Module
====================

Flow-rule DSL compilation and decompilation.

Components:
- lexer: DSL text to token stream
- parser: token stream to AST with syntax diagnostics
- validator: semantic checking and value resolution
- emitter: validated AST to controller JSON
- decompiler: controller JSON back to DSL text
- compiler: pipeline entry points
- defaults: the default rule set for new networks
"""

from .compiler import check_rules, compile_rules, decompile_rules
from .diagnostics import Diagnostic, DiagnosticCategory, Severity
from .emitter import PolicyEmitError, emit
from .decompiler import PolicyInputError, decompile
from .defaults import DEFAULT_RULES_SOURCE, default_policy
from .lexer import tokenize
from .parser import parse
from .validator import validate

__all__ = [
    "DEFAULT_RULES_SOURCE",
    "Diagnostic",
    "DiagnosticCategory",
    "PolicyEmitError",
    "PolicyInputError",
    "Severity",
    "check_rules",
    "compile_rules",
    "decompile",
    "decompile_rules",
    "default_policy",
    "emit",
    "parse",
    "tokenize",
    "validate",
]

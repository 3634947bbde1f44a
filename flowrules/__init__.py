"""
Flow Rule Compiler
==================

Bidirectional translator between the flow-rule policy DSL and the ordered
JSON rule arrays consumed by a network controller's data plane.

This package provides:
- Lexer, parser and semantic validator for the rule DSL
- Emitter producing the controller's rule, capability and tag arrays
- Decompiler rebuilding readable DSL from stored controller JSON
- Position-tagged diagnostics for live editor feedback
"""

__version__ = "1.0.0"
__author__ = "Flow Rule Compiler Team"

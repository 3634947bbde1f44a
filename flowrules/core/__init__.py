"""
Core Business Logic
==================

Core business logic modules for flow-rule compilation.

Modules:
- dsl: rule DSL lexing, parsing, validation, emission and decompilation
"""

"""
Test Suite
==========

Test suite matching the flowrules/ package structure.

Test Categories:
- unit: Unit tests for individual compiler stages, models and the CLI
- integration: Compile/decompile pipeline and round-trip tests
"""

"""
Data Models
===========

Pydantic data models for compiler inputs, outputs and diagnostics.

Models:
- schemas: diagnostics, policy bundle and compile/decompile results
"""

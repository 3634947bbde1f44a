"""
Configuration Management
=======================

Environment-based configuration using Pydantic Settings.

Components:
- settings: Compiler limits, output options and environment configuration
- logging: Structured logging configuration
"""

"""
Test Utilities
==============

Common assertion helpers for compiler tests.
"""

from .assertions import *

"""
Test Data
=========

Sample rule sources and controller JSON used across the test suites.
"""

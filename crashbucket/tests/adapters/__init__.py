"""Tests for adapter implementations.

These tests exercise adapters against real SQLite files or mocked
transports to validate translation between core domain models and
external formats.
"""

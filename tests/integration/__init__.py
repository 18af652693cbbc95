"""Integration tests for refineloop.

These tests exercise the durable execution history against a real
SQLite database (through aiosqlite) and the full service stack.
"""

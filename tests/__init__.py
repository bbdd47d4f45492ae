"""
CardCore Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, no network)
- integration/: Integration tests (SQLite file store, services, HTTP API)
"""

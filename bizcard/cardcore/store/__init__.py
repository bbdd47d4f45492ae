"""
Record store abstraction for CardCore.

This module provides a pluggable record store interface supporting:
- SQLite (local and single-node deployments)
- In-memory (for testing)

Invariants:
    - Version-checked updates are atomic inside the store
    - Writes are owner scoped; append-only tables need the service role
    - Failures surface as StoreError with a classification code

How to change safely:
    - New backends must implement the RecordStore protocol
    - Keep the update_versioned procedure contract identical across backends
"""

from .base import (
    APPEND_ONLY_TABLES,
    DEFAULT_UNIQUE_KEYS,
    UPDATE_VERSIONED,
    Record,
    RecordStore,
    create_record_store,
    utc_now_iso,
)
from .memory import InMemoryRecordStore
from .sqlite_store import SqliteRecordStore

__all__ = [
    # Protocol and types
    "RecordStore",
    "Record",
    "UPDATE_VERSIONED",
    "DEFAULT_UNIQUE_KEYS",
    "APPEND_ONLY_TABLES",
    "utc_now_iso",
    # Factory
    "create_record_store",
    # Implementations
    "SqliteRecordStore",
    "InMemoryRecordStore",
]

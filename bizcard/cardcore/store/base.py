"""
Base protocol and types for the record store abstraction.

This module defines the RecordStore protocol that all backends must implement,
along with the Record type and the helpers shared by the backends for the
atomic version-checked update procedure.

Invariants:
    - Every record carries an integer version starting at 1
    - update_versioned is a single atomic unit inside the store: no other
      writer can observe or interleave between its check and its write
    - Owner scoping is enforced by the store for every write
    - Append-only tables (analytics) are writable only with the service role

How to change safely:
    - Protocol changes require updating all implementations
    - New procedures must be registered in both backends
"""

from __future__ import annotations

import uuid
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import StoreConfig

UPDATE_VERSIONED = "update_versioned"

# Single-field unique constraints per table. "owner_id" refers to the record
# owner, every other name to a payload field.
DEFAULT_UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "personal_info": ("owner_id",),
    "business_cards": ("slug",),
}

# Append-only event tables and their columns.
APPEND_ONLY_TABLES: dict[str, tuple[str, ...]] = {
    "card_analytics": ("card_id", "ip_address", "user_agent", "referrer", "viewed_at"),
}


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_record_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Record:
    """A versioned, owner-scoped row.

    Attributes:
        table: Table the record lives in
        record_id: Unique record identifier (UUID)
        owner_id: Principal that controls the record
        version: Monotonic version, 1 on creation
        payload: Domain fields
        created_at: Creation timestamp (ISO-8601 UTC)
        updated_at: Last update timestamp (ISO-8601 UTC)
    """

    table: str
    record_id: str
    owner_id: str
    version: int
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Flatten to the wire representation."""
        return {
            **self.payload,
            "id": self.record_id,
            "owner_id": self.owner_id,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def versioned_outcome(
    record: Record | None,
    owner_id: str,
    expected_version: int,
) -> dict[str, Any] | None:
    """Decide whether a version-checked update may proceed.

    Returns None when the update may be applied, otherwise the procedure
    result describing why it was rejected.
    """
    if record is None:
        return {
            "success": False,
            "reason": "not_found",
            "message": "Record not found",
            "new_version": None,
            "current_version": None,
            "record": None,
        }
    if record.owner_id != owner_id:
        return {
            "success": False,
            "reason": "forbidden",
            "message": "Record belongs to another owner",
            "new_version": None,
            "current_version": None,
            "record": None,
        }
    if record.version != expected_version:
        return {
            "success": False,
            "reason": "conflict",
            "message": (
                f"Version conflict: expected {expected_version}, "
                f"current {record.version}"
            ),
            "new_version": None,
            "current_version": record.version,
            "record": None,
        }
    return None


def applied_outcome(record: Record) -> dict[str, Any]:
    """Procedure result for an applied update."""
    return {
        "success": True,
        "reason": None,
        "message": "Updated",
        "new_version": record.version,
        "current_version": record.version,
        "record": record,
    }


@runtime_checkable
class RecordStore(Protocol):
    """Protocol for record store backends.

    Durability contract:
        - A write returns only after it is committed
        - batch_insert is all-or-nothing per call

    Error contract:
        - Failures surface as StoreError carrying an ErrorCode value

    Example:
        >>> store = SqliteRecordStore(StoreConfig())
        >>> await store.connect()
        >>> record = await store.insert("business_cards", "user:1", {"name": "Work"})
        >>> result = await store.rpc("update_versioned", {...})
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the store. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release store resources."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the store is open."""
        ...

    @abstractmethod
    def with_service_role(self) -> RecordStore:
        """Return a view of this store using the elevated credential.

        The service role may write append-only tables, which are not owner
        scoped at write time.
        """
        ...

    @abstractmethod
    async def get(self, table: str, record_id: str) -> Record | None:
        """Get a record by ID, or None."""
        ...

    @abstractmethod
    async def select(
        self,
        table: str,
        owner_id: str | None = None,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        """Select records, oldest first.

        Args:
            table: Table name
            owner_id: Restrict to this owner
            filters: Payload fields that must match exactly
            limit: Maximum records to return
        """
        ...

    @abstractmethod
    async def select_one(
        self,
        table: str,
        owner_id: str | None = None,
        filters: dict[str, Any] | None = None,
    ) -> Record:
        """Select exactly one record.

        Raises:
            StoreError: With code NO_ROWS when nothing matches
        """
        ...

    @abstractmethod
    async def insert(
        self,
        table: str,
        owner_id: str,
        values: dict[str, Any],
        record_id: str | None = None,
    ) -> Record:
        """Insert a record with version 1.

        Raises:
            StoreError: With code UNIQUE_VIOLATION on a unique key collision
        """
        ...

    @abstractmethod
    async def delete(self, table: str, record_id: str, owner_id: str) -> bool:
        """Delete an owner's record. Returns False if nothing matched."""
        ...

    @abstractmethod
    async def rpc(self, procedure: str, params: dict[str, Any]) -> dict[str, Any]:
        """Call a stored procedure.

        The "update_versioned" procedure takes table, record_id, owner_id,
        expected_version and patch, and returns success, reason, message,
        new_version, current_version and record.
        """
        ...

    @abstractmethod
    async def batch_insert(self, table: str, rows: list[dict[str, Any]]) -> int:
        """Insert rows into an append-only table in one transaction.

        Raises:
            StoreError: INSUFFICIENT_PRIVILEGE without the service role
        """
        ...

    @abstractmethod
    async def select_events(
        self,
        table: str,
        card_ids: list[str],
        since: str | None = None,
    ) -> list[dict[str, Any]]:
        """Rows of an append-only table for the given cards, newest first."""
        ...


def create_record_store(config: StoreConfig) -> RecordStore:
    """Factory function to create a record store from configuration.

    Args:
        config: Store configuration

    Returns:
        In-memory store for ":memory:", SQLite store otherwise
    """
    from .memory import InMemoryRecordStore
    from .sqlite_store import SqliteRecordStore

    if config.database_path == ":memory:":
        return InMemoryRecordStore()
    return SqliteRecordStore(
        database_path=config.database_path,
        wal_mode=config.wal_mode,
        busy_timeout_ms=config.busy_timeout_ms,
    )

"""
In-memory record store implementation for testing.

This module provides a simple in-memory RecordStore for:
- Unit tests
- Integration tests
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Every operation suspends once before touching state, like a network call
    - The check and the write of update_versioned happen with no suspension
      point between them, so concurrent callers observe it as atomic

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with RecordStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any

from ..errors import ErrorCode, StoreError
from .base import (
    APPEND_ONLY_TABLES,
    DEFAULT_UNIQUE_KEYS,
    UPDATE_VERSIONED,
    Record,
    applied_outcome,
    new_record_id,
    utc_now_iso,
    versioned_outcome,
)

logger = logging.getLogger(__name__)


@dataclass
class _StoreData:
    """Storage shared between a store and its service-role view."""

    records: dict[str, dict[str, Record]] = field(default_factory=lambda: defaultdict(dict))
    events: dict[str, list[dict[str, Any]]] = field(default_factory=lambda: defaultdict(list))
    failures: dict[str, list[Exception]] = field(default_factory=lambda: defaultdict(list))
    calls: Counter = field(default_factory=Counter)
    connected: bool = False
    latency: float = 0.0


class InMemoryRecordStore:
    """In-memory implementation of RecordStore for testing.

    Attributes:
        unique_keys: Unique keys per table

    Example:
        >>> store = InMemoryRecordStore()
        >>> await store.connect()
        >>> store.inject_failure("batch_insert", StoreError("boom"))
        >>> await store.with_service_role().batch_insert("card_analytics", rows)
        Traceback (most recent call last):
        StoreError: boom
    """

    def __init__(
        self,
        unique_keys: dict[str, tuple[str, ...]] | None = None,
        latency: float = 0.0,
    ) -> None:
        """Initialize in-memory store.

        Args:
            unique_keys: Unique keys per table (defaults to DEFAULT_UNIQUE_KEYS)
            latency: Seconds each operation waits before running
        """
        self.unique_keys = unique_keys if unique_keys is not None else DEFAULT_UNIQUE_KEYS
        self._service_role = False
        self._data = _StoreData(latency=latency)

    @property
    def is_connected(self) -> bool:
        return self._data.connected

    def with_service_role(self) -> InMemoryRecordStore:
        view = copy.copy(self)
        view._service_role = True
        return view

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._data.connected = True
        logger.debug("InMemoryRecordStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._data.connected = False
        self._data.records.clear()
        self._data.events.clear()
        logger.debug("InMemoryRecordStore closed")

    async def _enter(self, operation: str) -> None:
        """Simulate the I/O boundary of a store call."""
        if not self._data.connected:
            raise StoreError("Record store is not connected")
        self._data.calls[operation] += 1
        await asyncio.sleep(self._data.latency)
        pending = self._data.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _unique_conflict(
        self,
        table: str,
        record_id: str,
        owner_id: str,
        payload: dict[str, Any],
        keys: set[str] | None = None,
    ) -> str | None:
        for key in self.unique_keys.get(table, ()):
            if keys is not None and key not in keys:
                continue
            value = owner_id if key == "owner_id" else payload.get(key)
            if value is None:
                continue
            for other in self._data.records[table].values():
                if other.record_id == record_id:
                    continue
                other_value = other.owner_id if key == "owner_id" else other.payload.get(key)
                if other_value == value:
                    return key
        return None

    async def get(self, table: str, record_id: str) -> Record | None:
        await self._enter("get")
        record = self._data.records[table].get(record_id)
        return copy.deepcopy(record)

    async def select(
        self,
        table: str,
        owner_id: str | None = None,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        await self._enter("select")
        matches = [
            copy.deepcopy(r)
            for r in self._data.records[table].values()
            if (owner_id is None or r.owner_id == owner_id)
            and all(r.payload.get(k) == v for k, v in (filters or {}).items())
        ]
        return matches[:limit] if limit is not None else matches

    async def select_one(
        self,
        table: str,
        owner_id: str | None = None,
        filters: dict[str, Any] | None = None,
    ) -> Record:
        records = await self.select(table, owner_id=owner_id, filters=filters, limit=2)
        if len(records) != 1:
            raise StoreError(
                f"JSON object requested, multiple (or no) rows returned from {table}",
                code=ErrorCode.NO_ROWS.value,
                table=table,
            )
        return records[0]

    async def insert(
        self,
        table: str,
        owner_id: str,
        values: dict[str, Any],
        record_id: str | None = None,
    ) -> Record:
        await self._enter("insert")
        record_id = record_id or new_record_id()
        payload = dict(values)

        if record_id in self._data.records[table] or self._unique_conflict(
            table, record_id, owner_id, payload
        ):
            raise StoreError(
                f"duplicate key value violates unique constraint on {table}",
                code=ErrorCode.UNIQUE_VIOLATION.value,
                table=table,
            )

        now = utc_now_iso()
        record = Record(
            table=table,
            record_id=record_id,
            owner_id=owner_id,
            version=1,
            payload=payload,
            created_at=now,
            updated_at=now,
        )
        self._data.records[table][record_id] = record
        return copy.deepcopy(record)

    async def delete(self, table: str, record_id: str, owner_id: str) -> bool:
        await self._enter("delete")
        record = self._data.records[table].get(record_id)
        if record is None or record.owner_id != owner_id:
            return False
        del self._data.records[table][record_id]
        return True

    async def rpc(self, procedure: str, params: dict[str, Any]) -> dict[str, Any]:
        await self._enter(f"rpc:{procedure}")
        if procedure != UPDATE_VERSIONED:
            raise StoreError(f"Could not find the function {procedure}")
        return self._update_versioned(**params)

    def _update_versioned(
        self,
        table: str,
        record_id: str,
        owner_id: str,
        expected_version: int,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        current = self._data.records[table].get(record_id)
        rejected = versioned_outcome(current, owner_id, expected_version)
        if rejected is not None:
            return rejected

        payload = {**current.payload, **patch}
        if self._unique_conflict(table, record_id, owner_id, payload, keys=set(patch)):
            raise StoreError(
                f"duplicate key value violates unique constraint on {table}",
                code=ErrorCode.UNIQUE_VIOLATION.value,
                table=table,
            )

        current.payload = payload
        current.version += 1
        current.updated_at = utc_now_iso()
        return applied_outcome(copy.deepcopy(current))

    async def batch_insert(self, table: str, rows: list[dict[str, Any]]) -> int:
        await self._enter("batch_insert")
        if not self._service_role:
            raise StoreError(
                f"permission denied for table {table}",
                code=ErrorCode.INSUFFICIENT_PRIVILEGE.value,
                table=table,
            )
        columns = APPEND_ONLY_TABLES.get(table)
        if columns is None:
            raise StoreError(f"{table} is not an append-only table", table=table)
        self._data.events[table].extend({c: row.get(c) for c in columns} for row in rows)
        return len(rows)

    async def select_events(
        self,
        table: str,
        card_ids: list[str],
        since: str | None = None,
    ) -> list[dict[str, Any]]:
        await self._enter("select_events")
        wanted = set(card_ids)
        rows = [
            dict(row)
            for row in self._data.events[table]
            if row["card_id"] in wanted and (since is None or row["viewed_at"] >= since)
        ]
        return sorted(rows, key=lambda r: r["viewed_at"], reverse=True)

    # Testing helpers

    def inject_failure(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of an operation raise `error`.

        Operation names are method names; procedures use "rpc:<name>".
        """
        self._data.failures[operation].extend([error] * times)

    def call_count(self, operation: str) -> int:
        """Number of calls made to an operation (testing helper)."""
        return self._data.calls[operation]

    def get_events(self, table: str = "card_analytics") -> list[dict[str, Any]]:
        """All rows written to an append-only table (testing helper)."""
        return list(self._data.events[table])

    def set_latency(self, seconds: float) -> None:
        """Change the simulated per-operation latency (testing helper)."""
        self._data.latency = seconds

"""
SQLite record store for CardCore.

This module implements the RecordStore protocol on a single SQLite file:
- Versioned, owner-scoped records with JSON payloads
- Single-field unique keys (card slug, one personal_info per owner)
- The atomic update_versioned procedure
- Append-only analytics rows written through the service role

Invariants:
    - All multi-statement writes run in one BEGIN IMMEDIATE transaction
    - update_versioned reads, compares and writes inside that transaction,
      so the write lock is held from check to commit
    - Unique key rows are always consistent with record payloads
    - SQLite errors never escape; they are translated to StoreError

How to change safely:
    - Schema migrations must be backward compatible
    - Add new procedures to _procedures and to InMemoryRecordStore
    - Keep error translation codes aligned with ErrorCode

Table schema:
    records:
        - table_name TEXT
        - record_id TEXT (UUID)
        - owner_id TEXT
        - version INTEGER
        - payload_json TEXT
        - created_at TEXT (ISO-8601)
        - updated_at TEXT (ISO-8601)
        - PRIMARY KEY (table_name, record_id)

    unique_values:
        - table_name TEXT
        - key_name TEXT
        - key_value TEXT
        - record_id TEXT
        - PRIMARY KEY (table_name, key_name, key_value)

    card_analytics:
        - id INTEGER PRIMARY KEY
        - card_id TEXT
        - ip_address TEXT
        - user_agent TEXT
        - referrer TEXT
        - viewed_at TEXT
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
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
class _ConnectionState:
    """State shared between a store and its service-role view."""

    connected: bool = False


class SqliteRecordStore:
    """SQLite implementation of the RecordStore protocol.

    Thread safety:
        Each operation opens its own connection.
        SQLite serializes writers; contention surfaces as SERIALIZATION_FAILURE.

    Example:
        >>> store = SqliteRecordStore("/var/lib/cardcore/cardcore.db")
        >>> await store.connect()
        >>> card = await store.insert("business_cards", "user:42", {"slug": "jane"})
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        database_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        unique_keys: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            database_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            unique_keys: Unique keys per table (defaults to DEFAULT_UNIQUE_KEYS)
        """
        self.database_path = Path(database_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.unique_keys = unique_keys if unique_keys is not None else DEFAULT_UNIQUE_KEYS
        self._service_role = False
        self._state = _ConnectionState()
        self._procedures = {UPDATE_VERSIONED: self._update_versioned}

    @property
    def is_connected(self) -> bool:
        return self._state.connected

    def with_service_role(self) -> SqliteRecordStore:
        view = copy.copy(self)
        view._service_role = True
        view._procedures = {UPDATE_VERSIONED: view._update_versioned}
        return view

    async def connect(self) -> None:
        """Create the database file and schema if needed."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            self._create_schema(conn)
        self._state.connected = True
        logger.info(f"Record store ready: {self.database_path}")

    async def close(self) -> None:
        self._state.connected = False
        logger.debug("Record store closed")

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            str(self.database_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _translate_errors(self, table: str) -> Iterator[None]:
        """Translate sqlite3 exceptions into classified StoreErrors."""
        try:
            yield
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise StoreError(
                    f"duplicate key value violates unique constraint on {table}",
                    code=ErrorCode.UNIQUE_VIOLATION.value,
                    table=table,
                ) from e
            raise StoreError(str(e), table=table) from e
        except sqlite3.OperationalError as e:
            text = str(e).lower()
            if "locked" in text or "busy" in text:
                raise StoreError(
                    f"could not serialize access on {table}: {e}",
                    code=ErrorCode.SERIALIZATION_FAILURE.value,
                    table=table,
                ) from e
            raise StoreError(str(e), table=table) from e
        except sqlite3.Error as e:
            raise StoreError(str(e), table=table) from e

    def _require_connected(self) -> None:
        if not self._state.connected:
            raise StoreError("Record store is not connected")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS records (
                table_name TEXT NOT NULL,
                record_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                payload_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (table_name, record_id)
            );

            CREATE INDEX IF NOT EXISTS idx_records_owner ON records(table_name, owner_id);

            CREATE TABLE IF NOT EXISTS unique_values (
                table_name TEXT NOT NULL,
                key_name TEXT NOT NULL,
                key_value TEXT NOT NULL,
                record_id TEXT NOT NULL,
                PRIMARY KEY (table_name, key_name, key_value)
            );

            CREATE INDEX IF NOT EXISTS idx_unique_values_record
                ON unique_values(table_name, record_id);

            CREATE TABLE IF NOT EXISTS card_analytics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                card_id TEXT NOT NULL,
                ip_address TEXT,
                user_agent TEXT,
                referrer TEXT,
                viewed_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_card_analytics_card
                ON card_analytics(card_id, viewed_at DESC);
        """)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, utc_now_iso()),
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            table=row["table_name"],
            record_id=row["record_id"],
            owner_id=row["owner_id"],
            version=row["version"],
            payload=json.loads(row["payload_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _unique_value(self, key: str, owner_id: str, payload: dict[str, Any]) -> Any:
        return owner_id if key == "owner_id" else payload.get(key)

    def _claim_unique_keys(
        self,
        conn: sqlite3.Connection,
        table: str,
        record_id: str,
        owner_id: str,
        payload: dict[str, Any],
        only: set[str] | None = None,
    ) -> None:
        for key in self.unique_keys.get(table, ()):
            if only is not None and key not in only:
                continue
            conn.execute(
                "DELETE FROM unique_values WHERE table_name = ? AND key_name = ? AND record_id = ?",
                (table, key, record_id),
            )
            value = self._unique_value(key, owner_id, payload)
            if value is None:
                continue
            conn.execute(
                """
                INSERT INTO unique_values (table_name, key_name, key_value, record_id)
                VALUES (?, ?, ?, ?)
                """,
                (table, key, str(value), record_id),
            )

    async def get(self, table: str, record_id: str) -> Record | None:
        self._require_connected()
        with self._translate_errors(table), self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            ).fetchone()
            return self._row_to_record(row) if row else None

    async def select(
        self,
        table: str,
        owner_id: str | None = None,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        self._require_connected()
        clauses = ["table_name = ?"]
        params: list[Any] = [table]
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        for name, value in (filters or {}).items():
            if not name.isidentifier():
                raise StoreError(f"Invalid filter field: {name!r}", table=table)
            if value is None:
                clauses.append(f"json_extract(payload_json, '$.{name}') IS NULL")
            else:
                clauses.append(f"json_extract(payload_json, '$.{name}') = ?")
                params.append(value)

        sql = f"SELECT * FROM records WHERE {' AND '.join(clauses)} ORDER BY created_at, rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._translate_errors(table), self._get_connection() as conn:
            return [self._row_to_record(row) for row in conn.execute(sql, params).fetchall()]

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
        self._require_connected()
        record_id = record_id or new_record_id()
        now = utc_now_iso()
        payload = dict(values)

        with self._translate_errors(table), self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._claim_unique_keys(conn, table, record_id, owner_id, payload)
                conn.execute(
                    """
                    INSERT INTO records (table_name, record_id, owner_id, version,
                                         payload_json, created_at, updated_at)
                    VALUES (?, ?, ?, 1, ?, ?, ?)
                    """,
                    (table, record_id, owner_id, json.dumps(payload), now, now),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Inserted record",
            extra={"table": table, "record_id": record_id, "owner_id": owner_id},
        )

        return Record(
            table=table,
            record_id=record_id,
            owner_id=owner_id,
            version=1,
            payload=payload,
            created_at=now,
            updated_at=now,
        )

    async def delete(self, table: str, record_id: str, owner_id: str) -> bool:
        self._require_connected()
        with self._translate_errors(table), self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    "DELETE FROM records WHERE table_name = ? AND record_id = ? AND owner_id = ?",
                    (table, record_id, owner_id),
                )
                if cursor.rowcount > 0:
                    conn.execute(
                        "DELETE FROM unique_values WHERE table_name = ? AND record_id = ?",
                        (table, record_id),
                    )
                conn.execute("COMMIT")
                return cursor.rowcount > 0
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def rpc(self, procedure: str, params: dict[str, Any]) -> dict[str, Any]:
        self._require_connected()
        handler = self._procedures.get(procedure)
        if handler is None:
            raise StoreError(f"Could not find the function {procedure}")
        return handler(**params)

    def _update_versioned(
        self,
        table: str,
        record_id: str,
        owner_id: str,
        expected_version: int,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        """Compare-and-swap update: select, compare, update, commit in one transaction."""
        with self._translate_errors(table), self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM records WHERE table_name = ? AND record_id = ?",
                    (table, record_id),
                ).fetchone()
                current = self._row_to_record(row) if row else None

                rejected = versioned_outcome(current, owner_id, expected_version)
                if rejected is not None:
                    conn.execute("ROLLBACK")
                    return rejected

                payload = {**current.payload, **patch}
                now = utc_now_iso()
                conn.execute(
                    """
                    UPDATE records SET payload_json = ?, version = version + 1, updated_at = ?
                    WHERE table_name = ? AND record_id = ? AND owner_id = ? AND version = ?
                    """,
                    (json.dumps(payload), now, table, record_id, owner_id, expected_version),
                )
                self._claim_unique_keys(
                    conn, table, record_id, owner_id, payload, only=set(patch)
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        current.payload = payload
        current.version = expected_version + 1
        current.updated_at = now
        return applied_outcome(current)

    async def batch_insert(self, table: str, rows: list[dict[str, Any]]) -> int:
        self._require_connected()
        if not self._service_role:
            raise StoreError(
                f"permission denied for table {table}",
                code=ErrorCode.INSUFFICIENT_PRIVILEGE.value,
                table=table,
            )
        columns = APPEND_ONLY_TABLES.get(table)
        if columns is None:
            raise StoreError(f"{table} is not an append-only table", table=table)
        if not rows:
            return 0

        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        with self._translate_errors(table), self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.executemany(sql, [tuple(row.get(c) for c in columns) for row in rows])
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return len(rows)

    async def select_events(
        self,
        table: str,
        card_ids: list[str],
        since: str | None = None,
    ) -> list[dict[str, Any]]:
        self._require_connected()
        if table not in APPEND_ONLY_TABLES:
            raise StoreError(f"{table} is not an append-only table", table=table)
        if not card_ids:
            return []

        sql = f"SELECT * FROM {table} WHERE card_id IN ({', '.join('?' for _ in card_ids)})"
        params: list[Any] = list(card_ids)
        if since is not None:
            sql += " AND viewed_at >= ?"
            params.append(since)
        sql += " ORDER BY viewed_at DESC, id DESC"

        with self._translate_errors(table), self._get_connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

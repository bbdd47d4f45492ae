"""
Unit tests for the SQLite record store.

Tests cover:
- Record CRUD with owner scoping
- Unique keys (slug, one personal_info per owner)
- The update_versioned procedure
- Append-only analytics rows and the service role
- Error translation to StoreError codes
"""

import asyncio
import sqlite3
import tempfile
from pathlib import Path

import pytest

from bizcard.cardcore.config import StoreConfig
from bizcard.cardcore.errors import ErrorCode, StoreError
from bizcard.cardcore.store import (
    UPDATE_VERSIONED,
    InMemoryRecordStore,
    RecordStore,
    SqliteRecordStore,
    create_record_store,
)


class TestSqliteRecordStore:
    """Tests for SqliteRecordStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = SqliteRecordStore(str(Path(data_dir) / "cardcore.db"), wal_mode=False)
        await store.connect()
        yield store
        await store.close()

    def _params(self, record, expected_version, patch, owner_id=None):
        return {
            "table": record.table,
            "record_id": record.record_id,
            "owner_id": owner_id or record.owner_id,
            "expected_version": expected_version,
            "patch": patch,
        }

    @pytest.mark.asyncio
    async def test_satisfies_protocol(self, store):
        assert isinstance(store, RecordStore)

    @pytest.mark.asyncio
    async def test_operations_require_connection(self, data_dir):
        store = SqliteRecordStore(str(Path(data_dir) / "closed.db"))

        with pytest.raises(StoreError):
            await store.select("business_cards")

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        record = await store.insert("business_cards", "user:1", {"name": "Work", "slug": "work"})

        fetched = await store.get("business_cards", record.record_id)

        assert fetched.version == 1
        assert fetched.owner_id == "user:1"
        assert fetched.payload == {"name": "Work", "slug": "work"}
        assert fetched.created_at == fetched.updated_at

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get("business_cards", "missing") is None

    @pytest.mark.asyncio
    async def test_select_filters(self, store):
        await store.insert("business_cards", "user:1", {"slug": "a", "is_active": True})
        await store.insert("business_cards", "user:1", {"slug": "b", "is_active": False})
        await store.insert("business_cards", "user:2", {"slug": "c", "is_active": True})

        mine = await store.select("business_cards", owner_id="user:1")
        active = await store.select("business_cards", filters={"is_active": True})
        limited = await store.select("business_cards", limit=1)

        assert [r.payload["slug"] for r in mine] == ["a", "b"]
        assert sorted(r.payload["slug"] for r in active) == ["a", "c"]
        assert len(limited) == 1

    @pytest.mark.asyncio
    async def test_select_rejects_unsafe_filter_names(self, store):
        with pytest.raises(StoreError):
            await store.select("business_cards", filters={"slug') OR 1=1 --": "x"})

    @pytest.mark.asyncio
    async def test_select_one_no_rows(self, store):
        with pytest.raises(StoreError) as exc_info:
            await store.select_one("business_cards", filters={"slug": "nope"})

        assert exc_info.value.code == ErrorCode.NO_ROWS.value

    @pytest.mark.asyncio
    async def test_duplicate_slug_is_unique_violation(self, store):
        await store.insert("business_cards", "user:1", {"slug": "jane"})

        with pytest.raises(StoreError) as exc_info:
            await store.insert("business_cards", "user:2", {"slug": "jane"})

        assert exc_info.value.code == ErrorCode.UNIQUE_VIOLATION.value
        assert len(await store.select("business_cards")) == 1

    @pytest.mark.asyncio
    async def test_one_personal_info_per_owner(self, store):
        await store.insert("personal_info", "user:1", {"full_name": "Jane"})

        with pytest.raises(StoreError) as exc_info:
            await store.insert("personal_info", "user:1", {"full_name": "Jane Again"})

        assert exc_info.value.code == ErrorCode.UNIQUE_VIOLATION.value
        await store.insert("personal_info", "user:2", {"full_name": "John"})

    @pytest.mark.asyncio
    async def test_delete_is_owner_scoped_and_frees_unique_keys(self, store):
        record = await store.insert("business_cards", "user:1", {"slug": "jane"})

        assert await store.delete("business_cards", record.record_id, "user:2") is False
        assert await store.delete("business_cards", record.record_id, "user:1") is True

        await store.insert("business_cards", "user:2", {"slug": "jane"})

    @pytest.mark.asyncio
    async def test_update_versioned_applies(self, store):
        record = await store.insert("business_cards", "user:1", {"name": "Work", "slug": "work"})

        result = await store.rpc(UPDATE_VERSIONED, self._params(record, 1, {"name": "Office"}))

        assert result["success"] is True
        assert result["new_version"] == 2
        fetched = await store.get("business_cards", record.record_id)
        assert fetched.version == 2
        assert fetched.payload == {"name": "Office", "slug": "work"}

    @pytest.mark.asyncio
    async def test_update_versioned_conflict_does_not_mutate(self, store):
        record = await store.insert("business_cards", "user:1", {"name": "Work"})
        await store.rpc(UPDATE_VERSIONED, self._params(record, 1, {"name": "v2"}))

        result = await store.rpc(UPDATE_VERSIONED, self._params(record, 1, {"name": "stale"}))

        assert result["success"] is False
        assert result["reason"] == "conflict"
        assert result["current_version"] == 2
        assert (await store.get("business_cards", record.record_id)).payload["name"] == "v2"

    @pytest.mark.asyncio
    async def test_update_versioned_owner_and_missing(self, store):
        record = await store.insert("business_cards", "user:1", {"name": "Work"})

        forbidden = await store.rpc(
            UPDATE_VERSIONED, self._params(record, 1, {"name": "x"}, owner_id="user:2")
        )
        missing = await store.rpc(
            UPDATE_VERSIONED,
            {
                "table": "business_cards",
                "record_id": "missing",
                "owner_id": "user:1",
                "expected_version": 1,
                "patch": {},
            },
        )

        assert forbidden["reason"] == "forbidden"
        assert missing["reason"] == "not_found"

    @pytest.mark.asyncio
    async def test_update_versioned_slug_change_respects_uniqueness(self, store):
        await store.insert("business_cards", "user:1", {"slug": "taken"})
        record = await store.insert("business_cards", "user:1", {"slug": "mine"})

        with pytest.raises(StoreError) as exc_info:
            await store.rpc(UPDATE_VERSIONED, self._params(record, 1, {"slug": "taken"}))

        assert exc_info.value.code == ErrorCode.UNIQUE_VIOLATION.value
        assert (await store.get("business_cards", record.record_id)).version == 1

        await store.rpc(UPDATE_VERSIONED, self._params(record, 1, {"slug": "renamed"}))
        await store.insert("business_cards", "user:2", {"slug": "mine"})

    @pytest.mark.asyncio
    async def test_concurrent_versioned_updates_one_winner(self, store):
        record = await store.insert("business_cards", "user:1", {"name": "Work"})

        results = await asyncio.gather(
            *(
                store.rpc(UPDATE_VERSIONED, self._params(record, 1, {"name": f"w{i}"}))
                for i in range(5)
            )
        )

        assert sum(r["success"] for r in results) == 1
        assert all(r["current_version"] == 2 for r in results)

    @pytest.mark.asyncio
    async def test_unknown_procedure(self, store):
        with pytest.raises(StoreError):
            await store.rpc("drop_everything", {})

    @pytest.mark.asyncio
    async def test_batch_insert_requires_service_role(self, store):
        row = {"card_id": "c1", "ip_address": "10.0.0.0", "viewed_at": "2026-01-01T00:00:00+00:00"}

        with pytest.raises(StoreError) as exc_info:
            await store.batch_insert("card_analytics", [row])
        assert exc_info.value.code == ErrorCode.INSUFFICIENT_PRIVILEGE.value

        assert await store.with_service_role().batch_insert("card_analytics", [row]) == 1

    @pytest.mark.asyncio
    async def test_select_events_newest_first_since(self, store):
        service = store.with_service_role()
        await service.batch_insert(
            "card_analytics",
            [
                {"card_id": "c1", "viewed_at": "2026-01-01T00:00:00+00:00"},
                {"card_id": "c1", "viewed_at": "2026-01-03T00:00:00+00:00"},
                {"card_id": "c2", "viewed_at": "2026-01-02T00:00:00+00:00"},
                {"card_id": "c3", "viewed_at": "2026-01-04T00:00:00+00:00"},
            ],
        )

        events = await store.select_events(
            "card_analytics", ["c1", "c2"], since="2026-01-02T00:00:00+00:00"
        )

        assert [(e["card_id"], e["viewed_at"][:10]) for e in events] == [
            ("c1", "2026-01-03"),
            ("c2", "2026-01-02"),
        ]
        assert await store.select_events("card_analytics", []) == []

    @pytest.mark.asyncio
    async def test_service_role_shares_connection_state(self, store):
        service = store.with_service_role()
        await store.close()

        assert not service.is_connected

    @pytest.mark.asyncio
    async def test_locked_database_is_serialization_failure(self, store):
        """Lock contention surfaces as a retryable SERIALIZATION_FAILURE."""
        blocker = sqlite3.connect(str(store.database_path), isolation_level=None)
        blocker.execute("BEGIN EXCLUSIVE")
        store.busy_timeout_ms = 10
        try:
            with pytest.raises(StoreError) as exc_info:
                await store.insert("business_cards", "user:1", {"slug": "x"})
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        assert exc_info.value.code == ErrorCode.SERIALIZATION_FAILURE.value

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, data_dir):
        path = str(Path(data_dir) / "reopen.db")
        first = SqliteRecordStore(path)
        await first.connect()
        record = await first.insert("business_cards", "user:1", {"slug": "keep"})
        await first.close()

        second = SqliteRecordStore(path)
        await second.connect()
        assert (await second.get("business_cards", record.record_id)).payload["slug"] == "keep"


class TestCreateRecordStore:
    """Tests for the store factory."""

    def test_memory(self):
        assert isinstance(create_record_store(StoreConfig(database_path=":memory:")), InMemoryRecordStore)

    def test_sqlite(self, tmp_path):
        store = create_record_store(StoreConfig(database_path=str(tmp_path / "x.db"), wal_mode=False))

        assert isinstance(store, SqliteRecordStore)
        assert store.wal_mode is False

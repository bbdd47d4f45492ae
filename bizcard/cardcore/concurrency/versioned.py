"""
Optimistic concurrency control for versioned records.

Every mutation of a versioned record is a compare-and-swap: the caller
supplies the version it last observed and the store applies the patch only
if that version is still current.

Invariants:
    - Records are created with version 1 (insert_versioned)
    - A successful update increments the version by exactly 1
    - A stale expected version fails without mutating the record
    - The check and the write are one store procedure call, never a
      read followed by a separate write from this process
    - Missing records and foreign owners are reported separately from
      conflicts and are never retried

How to change safely:
    - Do not add client-side read-check-write fallbacks
    - Conflict payload keys are part of the HTTP contract
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..errors import AccessDeniedError, NotFoundError, ValidationError, VersionConflictError
from ..store.base import UPDATE_VERSIONED, Record, RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictSignal:
    """Structured result for a stale expected version.

    Attributes:
        current_version: Version currently stored
        message: Human-readable explanation
    """

    current_version: int
    message: str
    conflict: bool = True

    @classmethod
    def from_error(cls, error: VersionConflictError) -> ConflictSignal:
        return cls(current_version=error.current_version, message=error.message)

    def to_response(self) -> dict[str, Any]:
        """Payload returned to callers of versioned operations."""
        return {
            "conflict": self.conflict,
            "currentVersion": self.current_version,
            "message": self.message,
        }


@dataclass(frozen=True)
class VersionedUpdate:
    """Result of an applied compare-and-swap update.

    Attributes:
        record: The record after the update
        new_version: Version produced by the update
    """

    record: Record
    new_version: int


class VersionedController:
    """Compare-and-swap mutations on top of a RecordStore.

    Example:
        >>> occ = VersionedController(store)
        >>> card = await occ.insert_versioned("business_cards", "user:1", {"name": "Work"})
        >>> result = await occ.update_versioned(
        ...     "business_cards", card.record_id, "user:1", 1, {"name": "Home"}
        ... )
        >>> result.new_version
        2
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def insert_versioned(
        self,
        table: str,
        owner_id: str,
        values: dict[str, Any],
        record_id: str | None = None,
    ) -> Record:
        """Create a record with version 1."""
        for reserved in ("id", "version", "owner_id"):
            if reserved in values:
                raise ValidationError(f"'{reserved}' is managed by the store", reserved)
        return await self.store.insert(table, owner_id, values, record_id=record_id)

    async def update_versioned(
        self,
        table: str,
        record_id: str,
        owner_id: str,
        expected_version: int,
        patch: dict[str, Any],
    ) -> VersionedUpdate:
        """Apply `patch` only if the stored version equals `expected_version`.

        Args:
            table: Table name
            record_id: Record identifier
            owner_id: Principal the record must belong to
            expected_version: Version the caller last observed
            patch: Fields to change

        Returns:
            VersionedUpdate with the new version and payload

        Raises:
            VersionConflictError: Stored version differs from expected_version
            NotFoundError: Record does not exist
            AccessDeniedError: Record belongs to another owner
        """
        for reserved in ("id", "version", "owner_id"):
            if reserved in patch:
                raise ValidationError(f"'{reserved}' is managed by the store", reserved)

        result = await self.store.rpc(
            UPDATE_VERSIONED,
            {
                "table": table,
                "record_id": record_id,
                "owner_id": owner_id,
                "expected_version": expected_version,
                "patch": patch,
            },
        )

        if result["success"]:
            logger.debug(
                "Versioned update applied",
                extra={
                    "table": table,
                    "record_id": record_id,
                    "new_version": result["new_version"],
                },
            )
            return VersionedUpdate(record=result["record"], new_version=result["new_version"])

        reason = result.get("reason")
        if reason == "conflict":
            logger.info(
                "Version conflict",
                extra={
                    "table": table,
                    "record_id": record_id,
                    "expected_version": expected_version,
                    "current_version": result["current_version"],
                },
            )
            raise VersionConflictError(
                current_version=result["current_version"],
                expected_version=expected_version,
                record_id=record_id,
            )
        if reason == "forbidden":
            raise AccessDeniedError(result["message"], actor=owner_id, resource_id=record_id)
        raise NotFoundError(result["message"], resource_type=table, resource_id=record_id)

    async def get(self, table: str, record_id: str, owner_id: str) -> Record:
        """Owner-scoped read of a single record.

        Raises:
            NotFoundError: Record does not exist
            AccessDeniedError: Record belongs to another owner
        """
        record = await self.store.get(table, record_id)
        if record is None:
            raise NotFoundError("Record not found", resource_type=table, resource_id=record_id)
        if record.owner_id != owner_id:
            raise AccessDeniedError(
                "Record belongs to another owner", actor=owner_id, resource_id=record_id
            )
        return record

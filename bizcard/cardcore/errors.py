"""
Error types for CardCore.

This module defines the exception hierarchy shared by the store, the
concurrency layer and the services:
- CardCoreError: Base exception
- StoreError: Structured failure reported by a record store
- VersionConflictError: Expected version is stale
- NotFoundError: Record does not exist
- AccessDeniedError: Record exists but belongs to another principal
- ValidationError: Input rejected before reaching the store

Invariants:
    - All errors inherit from CardCoreError
    - Every error carries a machine-readable code
    - Conflict errors always carry the current stored version
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Classification codes attached to store errors.

    Store codes follow the Postgres / PostgREST values so that callers can
    classify failures the same way regardless of the backing store.
    """

    UNIQUE_VIOLATION = "23505"
    SERIALIZATION_FAILURE = "40001"
    DEADLOCK_DETECTED = "40P01"
    NO_ROWS = "PGRST116"
    INSUFFICIENT_PRIVILEGE = "42501"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STORE_ERROR = "STORE_ERROR"


class CardCoreError(Exception):
    """Base exception for all CardCore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CARDCORE_ERROR"
        self.details = details or {}


class StoreError(CardCoreError):
    """A record store operation failed.

    Raised when:
    - A unique index rejects a write
    - The store aborts a transaction (lock contention, deadlock)
    - A single-row query matched nothing
    - The credential in use may not touch the table
    """

    def __init__(
        self,
        message: str,
        code: str = ErrorCode.STORE_ERROR.value,
        table: str | None = None,
    ) -> None:
        super().__init__(message, code=code, details={"table": table})
        self.table = table


class VersionConflictError(CardCoreError):
    """The supplied version no longer matches the stored one.

    The caller should re-fetch the record and decide whether to retry.

    Attributes:
        current_version: Version currently stored
        expected_version: Version the caller supplied
    """

    def __init__(
        self,
        current_version: int,
        expected_version: int | None = None,
        message: str | None = None,
        record_id: str | None = None,
    ) -> None:
        message = message or (
            f"Version conflict: data was modified by another session "
            f"(expected {expected_version}, current {current_version})"
        )
        super().__init__(
            message,
            code=ErrorCode.VERSION_CONFLICT.value,
            details={
                "record_id": record_id,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )
        self.current_version = current_version
        self.expected_version = expected_version
        self.record_id = record_id


class NotFoundError(CardCoreError):
    """Resource not found.

    Raised when:
    - A record id does not exist in the table
    - A public card slug does not resolve to an active card
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.NOT_FOUND.value,
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class AccessDeniedError(CardCoreError):
    """The record exists but is owned by another principal."""

    def __init__(
        self,
        message: str,
        actor: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.ACCESS_DENIED.value,
            details={
                "actor": actor,
                "resource_id": resource_id,
            },
        )
        self.actor = actor
        self.resource_id = resource_id


class ValidationError(CardCoreError):
    """Input rejected before any store call."""

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.VALIDATION_ERROR.value,
            details={"field": field_name},
        )
        self.field_name = field_name

"""
Profile operations: personal info and professional info.

Both sections are versioned records. Personal info is a single record per
owner; professional info is a list of records per owner.

Invariants:
    - Existing records are only changed through update_versioned
    - Personal info saves never retry a version conflict; professional info
      saves opt in to OPTIMISTIC_LOCK_POLICY
    - Concurrent first saves of personal info converge on one record
"""

from __future__ import annotations

import logging
from typing import Any

from ..concurrency.retry import DATABASE_POLICY, OPTIMISTIC_LOCK_POLICY, RetryPolicy, with_retry
from ..concurrency.versioned import VersionedController
from ..errors import NotFoundError, ValidationError, VersionConflictError
from ..store.base import Record

logger = logging.getLogger(__name__)

PERSONAL_INFO = "personal_info"
PROFESSIONAL_INFO = "professional_info"


class ProfileService:
    """Versioned saves of a principal's profile sections.

    Attributes:
        occ: Versioned controller over the record store
        database_policy: Policy for plain store contention
        occ_policy: Policy for saves that opt in to conflict retries
    """

    def __init__(
        self,
        occ: VersionedController,
        database_policy: RetryPolicy = DATABASE_POLICY,
        occ_policy: RetryPolicy = OPTIMISTIC_LOCK_POLICY,
    ) -> None:
        self.occ = occ
        self.store = occ.store
        self.database_policy = database_policy
        self.occ_policy = occ_policy

    async def get_profile(self, owner_id: str) -> dict[str, Any]:
        """Load all profile sections of an owner."""
        personal = await self.store.select(PERSONAL_INFO, owner_id=owner_id, limit=1)
        professional = await self.store.select(PROFESSIONAL_INFO, owner_id=owner_id)
        return {
            "personal_info": personal[0].to_dict() if personal else None,
            "professional_info": [r.to_dict() for r in professional],
        }

    async def save_personal_info(
        self,
        owner_id: str,
        values: dict[str, Any],
        expected_version: int | None = None,
    ) -> Record:
        """Create the owner's personal info, or update it at `expected_version`.

        Raises:
            VersionConflictError: The record exists and expected_version is
                missing or stale
        """
        if "full_name" in values and not values["full_name"]:
            raise ValidationError("Full name is required", "full_name")

        async def attempt() -> Record:
            existing = await self.store.select(PERSONAL_INFO, owner_id=owner_id, limit=1)
            if not existing:
                if "full_name" not in values:
                    raise ValidationError("Full name is required", "full_name")
                return await self.occ.insert_versioned(PERSONAL_INFO, owner_id, values)

            current = existing[0]
            if expected_version is None:
                raise VersionConflictError(
                    current_version=current.version,
                    record_id=current.record_id,
                    message="Version conflict: personal info already exists, reload before saving",
                )
            result = await self.occ.update_versioned(
                PERSONAL_INFO, current.record_id, owner_id, expected_version, values
            )
            return result.record

        record = await with_retry(
            attempt,
            self.database_policy.without_conflicts(),
            operation_name="save_personal_info",
        )
        logger.info(
            "Saved personal info",
            extra={"owner_id": owner_id, "version": record.version},
        )
        return record

    async def save_professional_info(
        self,
        owner_id: str,
        values: dict[str, Any],
        record_id: str | None = None,
        expected_version: int | None = None,
    ) -> Record:
        """Insert a professional info entry, or update one at `expected_version`."""
        if record_id is None:
            return await with_retry(
                lambda: self.occ.insert_versioned(PROFESSIONAL_INFO, owner_id, values),
                self.database_policy.without_conflicts(),
                operation_name="insert_professional_info",
            )

        if expected_version is None:
            raise ValidationError("expected_version is required to update", "expected_version")

        result = await with_retry(
            lambda: self.occ.update_versioned(
                PROFESSIONAL_INFO, record_id, owner_id, expected_version, values
            ),
            self.occ_policy,
            operation_name="update_professional_info",
        )
        return result.record

    async def delete_professional_info(self, owner_id: str, record_id: str) -> None:
        """Delete one of the owner's professional info entries.

        Raises:
            NotFoundError: No such entry for this owner
        """
        deleted = await with_retry(
            lambda: self.store.delete(PROFESSIONAL_INFO, record_id, owner_id),
            self.database_policy.without_conflicts(),
            operation_name="delete_professional_info",
        )
        if not deleted:
            raise NotFoundError(
                "Professional info not found",
                resource_type=PROFESSIONAL_INFO,
                resource_id=record_id,
            )

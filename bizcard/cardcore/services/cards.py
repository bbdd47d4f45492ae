"""
Business card operations.

Cards are versioned records with a globally unique slug. Public card pages
and vCard downloads are recorded through the telemetry pipeline.

Invariants:
    - Slugs are lowercase alphanumerics joined by single hyphens
    - Slug collisions are resolved by retrying with a random suffix; the
      unique index, not a pre-check, decides who owns a slug
    - At most one default card per owner after set_default_card returns
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import replace
from typing import Any

from ..concurrency.retry import DATABASE_POLICY, OPTIMISTIC_LOCK_POLICY, RetryPolicy, with_retry
from ..concurrency.versioned import VersionedController
from ..errors import ErrorCode, NotFoundError, StoreError, ValidationError
from ..store.base import Record
from ..telemetry.pipeline import TelemetryPipeline
from .profile import PERSONAL_INFO, PROFESSIONAL_INFO

logger = logging.getLogger(__name__)

BUSINESS_CARDS = "business_cards"

EDITABLE_CARD_FIELDS = frozenset(
    {"name", "template_type", "fields_config", "design_config", "is_active"}
)

DOWNLOAD_REFERRER = "vcard-download"

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
SLUG_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def slugify(text: str) -> str:
    """Build a URL-friendly slug from a card name.

    Only ASCII letters and digits survive; other characters are dropped.
    """
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug, flags=re.ASCII)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-")


def is_valid_slug(slug: str) -> bool:
    return bool(SLUG_PATTERN.match(slug))


def _random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(SLUG_SUFFIX_ALPHABET) for _ in range(length))


class CardService:
    """Card creation, versioned edits and public access.

    Attributes:
        occ: Versioned controller over the record store
        telemetry: Pipeline receiving view/download events (optional)
        slug_attempts: Slug candidates tried before giving up
    """

    def __init__(
        self,
        occ: VersionedController,
        telemetry: TelemetryPipeline | None = None,
        database_policy: RetryPolicy = DATABASE_POLICY,
        occ_policy: RetryPolicy = OPTIMISTIC_LOCK_POLICY,
        slug_attempts: int = 5,
    ) -> None:
        self.occ = occ
        self.store = occ.store
        self.telemetry = telemetry
        self.database_policy = database_policy
        self.occ_policy = occ_policy
        self.slug_policy = replace(
            database_policy,
            max_attempts=slug_attempts,
            initial_delay=0.0,
            transient_codes=frozenset({ErrorCode.UNIQUE_VIOLATION.value}),
            transient_messages=("unique constraint",),
        )

    async def list_cards(self, owner_id: str) -> list[Record]:
        return await self.store.select(BUSINESS_CARDS, owner_id=owner_id)

    async def create_card(
        self,
        owner_id: str,
        name: str,
        template_type: str | None = None,
        fields_config: dict[str, Any] | None = None,
        design_config: dict[str, Any] | None = None,
    ) -> Record:
        """Create a card with a unique slug derived from its name.

        Raises:
            ValidationError: The name yields no usable slug
            StoreError: UNIQUE_VIOLATION after every slug candidate collided
        """
        base_slug = slugify(name)
        if not base_slug:
            raise ValidationError("Invalid card name: cannot generate slug", "name")
        if not is_valid_slug(base_slug):
            raise ValidationError(
                "Invalid slug format: must contain only lowercase letters, numbers, and hyphens",
                "name",
            )

        candidates = 0

        async def attempt() -> Record:
            nonlocal candidates
            slug = base_slug if candidates == 0 else f"{base_slug}-{_random_suffix()}"
            candidates += 1
            return await self.occ.insert_versioned(
                BUSINESS_CARDS,
                owner_id,
                {
                    "name": name,
                    "slug": slug,
                    "template_type": template_type,
                    "fields_config": fields_config or {},
                    "design_config": design_config or {},
                    "is_active": True,
                    "is_default": False,
                },
            )

        card = await with_retry(attempt, self.slug_policy, operation_name="create_card")
        logger.info(
            "Created card",
            extra={"owner_id": owner_id, "card_id": card.record_id, "slug": card.payload["slug"]},
        )
        return card

    async def update_card(
        self,
        owner_id: str,
        card_id: str,
        expected_version: int,
        patch: dict[str, Any],
    ) -> Record:
        """Apply an edit at `expected_version`. Conflicts are returned to the caller."""
        unknown = set(patch) - EDITABLE_CARD_FIELDS
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
        if not patch:
            raise ValidationError("No changes supplied")

        result = await with_retry(
            lambda: self.occ.update_versioned(
                BUSINESS_CARDS, card_id, owner_id, expected_version, patch
            ),
            self.database_policy.without_conflicts(),
            operation_name="update_card",
        )
        return result.record

    async def set_default_card(self, owner_id: str, card_id: str) -> Record:
        """Make one card the owner's default and clear the flag on the others.

        Each attempt re-reads current versions, so a conflict with a
        concurrent edit is retried against fresh data.
        """

        async def attempt() -> Record:
            cards = await self.store.select(BUSINESS_CARDS, owner_id=owner_id)
            target = next((c for c in cards if c.record_id == card_id), None)
            if target is None:
                raise NotFoundError(
                    "Card not found", resource_type=BUSINESS_CARDS, resource_id=card_id
                )

            for card in cards:
                if card.record_id != card_id and card.payload.get("is_default"):
                    await self.occ.update_versioned(
                        BUSINESS_CARDS, card.record_id, owner_id, card.version,
                        {"is_default": False},
                    )

            if target.payload.get("is_default"):
                return target
            result = await self.occ.update_versioned(
                BUSINESS_CARDS, card_id, owner_id, target.version, {"is_default": True}
            )
            return result.record

        return await with_retry(attempt, self.occ_policy, operation_name="set_default_card")

    async def get_public_card(self, slug: str) -> Record:
        """Resolve an active card by slug.

        Raises:
            NotFoundError: No active card has this slug
        """
        try:
            return await self.store.select_one(
                BUSINESS_CARDS, filters={"slug": slug, "is_active": True}
            )
        except StoreError as e:
            if e.code == ErrorCode.NO_ROWS.value:
                raise NotFoundError(
                    "Card not found", resource_type=BUSINESS_CARDS, resource_id=slug
                ) from e
            raise

    def record_view(
        self,
        card: Record,
        ip_address: str | None,
        user_agent: str | None = None,
        referrer: str | None = None,
    ) -> None:
        if self.telemetry is not None:
            self.telemetry.record_event(card.record_id, ip_address, user_agent, referrer)

    def record_download(
        self,
        card: Record,
        ip_address: str | None,
        user_agent: str | None = None,
    ) -> None:
        # Downloads share the views table, marked by their referrer
        self.record_view(card, ip_address, user_agent, DOWNLOAD_REFERRER)

    async def get_owner_sections(self, card: Record) -> dict[str, Any]:
        """Personal and professional info shown alongside a public card."""
        personal = await self.store.select(PERSONAL_INFO, owner_id=card.owner_id, limit=1)
        professional = await self.store.select(PROFESSIONAL_INFO, owner_id=card.owner_id)
        professional.sort(key=lambda r: not r.payload.get("is_primary", False))
        return {
            "personal_info": personal[0].payload if personal else None,
            "professional_info": [r.payload for r in professional],
        }

"""Administrative operations on issued keys.

Plaintext keys are only ever returned from ``create`` and ``regenerate``
calls; list operations expose previews only.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from waveorder.auth.keys import KeyKind, generate_key
from waveorder.auth.plans import has_api_access
from waveorder.auth.scopes import filter_scopes, normalize_scopes
from waveorder.config import Settings
from waveorder.errors import (
    ApiKeyNotFoundError,
    ApiKeyRevokedError,
    BusinessNotFoundError,
    IntegrationNotFoundError,
    IntegrationSlugTakenError,
    KeyLimitExceededError,
    PlanRestrictedError,
)
from waveorder.storage.orm import ApiKey, Business, Integration
from waveorder.storage.repositories import (
    ApiKeyRepository,
    BusinessRepository,
    IntegrationRepository,
)

logger = structlog.get_logger()

RecordT = TypeVar("RecordT")


@dataclass(frozen=True)
class IssuedKey(Generic[RecordT]):
    """A persisted key record plus its one-time plaintext."""

    record: RecordT
    plain_key: str


def normalize_slug(raw: str) -> str:
    """Lowercase, keep ``[a-z0-9-]``, collapse and trim dashes."""
    slug = re.sub(r"[^a-z0-9-]", "", raw.lower())
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


class ApiKeyManager:
    """Create, list, revoke and regenerate business API keys."""

    def __init__(self, session: AsyncSession, settings: Settings) -> None:
        self._session = session
        self._settings = settings

    async def _get_business(self, business_id: uuid.UUID) -> Business:
        business = await BusinessRepository(self._session).get_by_id(business_id)
        if business is None:
            raise BusinessNotFoundError(str(business_id))
        return business

    async def _require_api_plan(self, business_id: uuid.UUID) -> Business:
        business = await self._get_business(business_id)
        plan = str(business.subscription_plan)
        if not has_api_access(plan, self._settings):
            raise PlanRestrictedError(business_id, plan)
        return business

    async def create_key(
        self,
        business_id: uuid.UUID,
        *,
        name: str,
        scopes: list[str] | None = None,
        expires_at: datetime | None = None,
    ) -> IssuedKey[ApiKey]:
        """Issue a new key for a business on an API-enabled plan.

        Raises:
            BusinessNotFoundError: unknown business.
            PlanRestrictedError: plan has no API access.
            KeyLimitExceededError: active key limit reached.
        """
        await self._require_api_plan(business_id)
        repo = ApiKeyRepository(self._session, business_id)

        limit = self._settings.max_active_keys_per_business
        if await repo.count_active() >= limit:
            raise KeyLimitExceededError(limit)

        generated = generate_key(KeyKind.LIVE)
        record = await repo.create(
            name=name.strip(),
            key_hash=generated.key_hash,
            key_preview=generated.key_preview,
            scopes=normalize_scopes(scopes),
            expires_at=expires_at,
        )
        logger.info(
            "api_key_created",
            business_id=str(business_id),
            key_id=str(record.id),
            key_preview=record.key_preview,
        )
        return IssuedKey(record=record, plain_key=generated.plain_key)

    async def list_keys(self, business_id: uuid.UUID) -> list[ApiKey]:
        await self._get_business(business_id)
        return await ApiKeyRepository(self._session, business_id).list_all()

    async def revoke_key(self, business_id: uuid.UUID, key_id: uuid.UUID) -> None:
        """Disable a key permanently.

        Raises:
            ApiKeyNotFoundError: no such key for this business.
            ApiKeyRevokedError: key already revoked.
        """
        repo = ApiKeyRepository(self._session, business_id)
        record = await repo.get_by_id(key_id)
        if record is None:
            raise ApiKeyNotFoundError(str(key_id))
        if not await repo.revoke(key_id):
            raise ApiKeyRevokedError(str(key_id))
        logger.info("api_key_revoked", business_id=str(business_id), key_id=str(key_id))

    async def regenerate_key(
        self, business_id: uuid.UUID, key_id: uuid.UUID
    ) -> IssuedKey[ApiKey]:
        """Replace the key secret; the old plaintext stops working at once.

        Raises:
            PlanRestrictedError: plan has no API access.
            ApiKeyNotFoundError: no such key for this business.
            ApiKeyRevokedError: revoked keys cannot be regenerated.
        """
        await self._require_api_plan(business_id)
        repo = ApiKeyRepository(self._session, business_id)
        record = await repo.get_by_id(key_id)
        if record is None:
            raise ApiKeyNotFoundError(str(key_id))

        generated = generate_key(KeyKind.LIVE)
        replaced = await repo.replace_hash(
            key_id, key_hash=generated.key_hash, key_preview=generated.key_preview
        )
        if not replaced:
            raise ApiKeyRevokedError(str(key_id))

        await self._session.refresh(record)
        logger.info(
            "api_key_regenerated",
            business_id=str(business_id),
            key_id=str(key_id),
            key_preview=generated.key_preview,
        )
        return IssuedKey(record=record, plain_key=generated.plain_key)


class IntegrationManager:
    """Create integrations and rotate their keys."""

    def __init__(self, session: AsyncSession, settings: Settings) -> None:
        self._session = session
        self._settings = settings
        self._repo = IntegrationRepository(session)

    async def create_integration(
        self,
        *,
        name: str,
        slug: str,
        description: str | None = None,
        scopes: list[str] | None = None,
        rate_limit: int | None = None,
        rate_window_seconds: int | None = None,
    ) -> IssuedKey[Integration]:
        """Register an integration and issue its ``wo_int_`` key.

        Raises:
            IntegrationSlugTakenError: slug already in use.
        """
        normalized = normalize_slug(slug)
        if not normalized:
            raise ValueError("Integration slug is empty after normalization")
        if await self._repo.get_by_slug(normalized) is not None:
            raise IntegrationSlugTakenError(normalized)

        if rate_limit is None:
            rate_limit = self._settings.integration_default_rate_limit
        if rate_window_seconds is None:
            rate_window_seconds = self._settings.integration_default_rate_window_seconds

        generated = generate_key(KeyKind.INTEGRATION)
        record = await self._repo.create(
            name=name.strip(),
            slug=normalized,
            description=description,
            api_key_hash=generated.key_hash,
            api_key_preview=generated.key_preview,
            scopes=filter_scopes(scopes),
            rate_limit=rate_limit,
            rate_window_seconds=rate_window_seconds,
        )
        logger.info(
            "integration_created",
            integration_id=str(record.id),
            slug=record.slug,
            key_preview=record.api_key_preview,
        )
        return IssuedKey(record=record, plain_key=generated.plain_key)

    async def list_integrations(self) -> list[Integration]:
        return await self._repo.list_all()

    async def _get(self, integration_id: uuid.UUID) -> Integration:
        record = await self._repo.get_by_id(integration_id)
        if record is None:
            raise IntegrationNotFoundError(str(integration_id))
        return record

    async def regenerate_key(self, integration_id: uuid.UUID) -> IssuedKey[Integration]:
        record = await self._get(integration_id)
        generated = generate_key(KeyKind.INTEGRATION)
        await self._repo.replace_hash(
            integration_id,
            api_key_hash=generated.key_hash,
            api_key_preview=generated.key_preview,
        )
        await self._session.refresh(record)
        logger.info(
            "integration_key_regenerated",
            integration_id=str(integration_id),
            key_preview=generated.key_preview,
        )
        return IssuedKey(record=record, plain_key=generated.plain_key)

    async def set_active(self, integration_id: uuid.UUID, *, is_active: bool) -> None:
        await self._get(integration_id)
        await self._repo.set_active(integration_id, is_active=is_active)
        logger.info(
            "integration_status_changed",
            integration_id=str(integration_id),
            is_active=is_active,
        )

"""CRUD repositories for API access records."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from waveorder.storage.orm import ApiKey, AuthAuditLog, Business, Integration


class BusinessRepository:
    """Read access to businesses (tenants)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, business_id: uuid.UUID) -> Business | None:
        return await self._session.get(Business, business_id)


class ApiKeyRepository:
    """Tenant-scoped repository for business API keys.

    All queries are filtered by business_id so one tenant can never
    read or mutate another tenant's keys.
    """

    def __init__(self, session: AsyncSession, business_id: uuid.UUID) -> None:
        self._session = session
        self._business_id = business_id

    async def create(
        self,
        *,
        name: str,
        key_hash: str,
        key_preview: str,
        scopes: list[str],
        expires_at: datetime | None = None,
    ) -> ApiKey:
        """Insert a new key record for the current business."""
        api_key = ApiKey(
            business_id=self._business_id,
            name=name,
            key_hash=key_hash,
            key_preview=key_preview,
            scopes=scopes,
            expires_at=expires_at,
            is_active=True,
            request_count=0,
        )
        self._session.add(api_key)
        await self._session.flush()
        return api_key

    async def get_by_id(self, key_id: uuid.UUID) -> ApiKey | None:
        stmt = select(ApiKey).where(
            ApiKey.id == key_id,
            ApiKey.business_id == self._business_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[ApiKey]:
        """All keys of the business, newest first."""
        stmt = (
            select(ApiKey)
            .where(ApiKey.business_id == self._business_id)
            .order_by(ApiKey.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_active(self) -> int:
        stmt = select(func.count(ApiKey.id)).where(
            ApiKey.business_id == self._business_id,
            ApiKey.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def revoke(self, key_id: uuid.UUID) -> bool:
        """Soft-delete: disable the key and stamp ``revoked_at``.

        Returns:
            True if an active key was revoked.
        """
        stmt = (
            update(ApiKey)
            .where(
                ApiKey.id == key_id,
                ApiKey.business_id == self._business_id,
                ApiKey.is_active.is_(True),
            )
            .values(is_active=False, revoked_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def replace_hash(
        self, key_id: uuid.UUID, *, key_hash: str, key_preview: str
    ) -> bool:
        """Swap the stored hash in a single UPDATE.

        The old hash stops matching as soon as the statement commits.
        Only active keys can be regenerated.

        Returns:
            True if the key was updated.
        """
        stmt = (
            update(ApiKey)
            .where(
                ApiKey.id == key_id,
                ApiKey.business_id == self._business_id,
                ApiKey.is_active.is_(True),
            )
            .values(key_hash=key_hash, key_preview=key_preview, last_used_at=None)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]


class IntegrationRepository:
    """Repository for platform integrations (not tenant-scoped)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        name: str,
        slug: str,
        api_key_hash: str,
        api_key_preview: str,
        scopes: list[str],
        rate_limit: int,
        rate_window_seconds: int,
        description: str | None = None,
    ) -> Integration:
        integration = Integration(
            name=name,
            slug=slug,
            description=description,
            api_key_hash=api_key_hash,
            api_key_preview=api_key_preview,
            scopes=scopes,
            rate_limit=rate_limit,
            rate_window_seconds=rate_window_seconds,
            is_active=True,
            request_count=0,
        )
        self._session.add(integration)
        await self._session.flush()
        return integration

    async def get_by_id(self, integration_id: uuid.UUID) -> Integration | None:
        return await self._session.get(Integration, integration_id)

    async def get_by_slug(self, slug: str) -> Integration | None:
        stmt = select(Integration).where(Integration.slug == slug)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[Integration]:
        stmt = select(Integration).order_by(Integration.created_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def replace_hash(
        self, integration_id: uuid.UUID, *, api_key_hash: str, api_key_preview: str
    ) -> bool:
        """Swap the integration key hash in a single UPDATE."""
        stmt = (
            update(Integration)
            .where(Integration.id == integration_id)
            .values(api_key_hash=api_key_hash, api_key_preview=api_key_preview)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def set_active(self, integration_id: uuid.UUID, *, is_active: bool) -> bool:
        stmt = (
            update(Integration)
            .where(Integration.id == integration_id)
            .values(is_active=is_active)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]


class AuditLogRepository:
    """Append-only access to the authentication audit log.

    Entries are inserted and queried, never updated or deleted.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, **fields: Any) -> AuthAuditLog:
        entry = AuthAuditLog(**fields)
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def list_entries(
        self,
        *,
        owner_id: uuid.UUID | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        outcome: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[AuthAuditLog], int]:
        """Query entries by owner and time range, newest first.

        Args:
            owner_id: Business or integration id.
            since: Inclusive lower bound on ``created_at``.
            until: Exclusive upper bound on ``created_at``.
            outcome: Filter by outcome value, e.g. ``rate_limited``.
            limit: Maximum entries returned.
            offset: Entries skipped.

        Returns:
            Tuple of (entries page, total matching count).
        """
        conditions = []
        if owner_id is not None:
            conditions.append(AuthAuditLog.owner_id == owner_id)
        if since is not None:
            conditions.append(AuthAuditLog.created_at >= since)
        if until is not None:
            conditions.append(AuthAuditLog.created_at < until)
        if outcome is not None:
            conditions.append(AuthAuditLog.outcome == outcome)

        count_stmt = select(func.count(AuthAuditLog.id)).where(*conditions)
        total = int((await self._session.execute(count_stmt)).scalar_one())

        stmt = (
            select(AuthAuditLog)
            .where(*conditions)
            .order_by(AuthAuditLog.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

"""Resolve presented keys to identities via hash lookup."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from waveorder.auth.context import ApiIdentity
from waveorder.auth.keys import KeyKind, detect_kind, hash_key
from waveorder.auth.plans import RateLimitPolicy, plan_policy
from waveorder.config import Settings
from waveorder.storage.orm import ApiKey, Integration

logger = structlog.get_logger()


class KeyStore:
    """Hash-based lookup of issued keys for both key kinds.

    Disabled records are still resolved so that the gate can reject
    them; only an unknown hash yields ``None``. Lookup errors propagate
    (``SQLAlchemyError``) and are classified as transient by the caller.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings

    async def resolve(self, plain_key: str) -> ApiIdentity | None:
        """Look up the issued key record matching ``hash(plain_key)``."""
        kind = detect_kind(plain_key)
        if kind is None:
            return None
        key_hash = hash_key(plain_key)

        async with self._session_factory() as session:
            if kind is KeyKind.LIVE:
                return await self._resolve_business_key(session, key_hash)
            return await self._resolve_integration_key(session, key_hash)

    async def _resolve_business_key(
        self, session: AsyncSession, key_hash: str
    ) -> ApiIdentity | None:
        stmt = (
            select(ApiKey)
            .where(ApiKey.key_hash == key_hash)
            .options(selectinload(ApiKey.business))
        )
        record = (await session.execute(stmt)).scalar_one_or_none()
        if record is None:
            return None

        plan = str(record.business.subscription_plan)
        return ApiIdentity(
            key_id=record.id,
            kind=KeyKind.LIVE,
            owner_id=record.business_id,
            owner_name=record.business.name,
            scopes=frozenset(record.scopes or ()),
            key_preview=record.key_preview,
            is_active=record.is_active,
            owner_is_active=record.business.is_active,
            plan=plan,
            policy=plan_policy(plan, self._settings),
            expires_at=record.expires_at,
            revoked_at=record.revoked_at,
        )

    async def _resolve_integration_key(
        self, session: AsyncSession, key_hash: str
    ) -> ApiIdentity | None:
        stmt = select(Integration).where(Integration.api_key_hash == key_hash)
        record = (await session.execute(stmt)).scalar_one_or_none()
        if record is None:
            return None

        limit = record.rate_limit
        if limit is None:
            limit = self._settings.integration_default_rate_limit
        window_seconds = record.rate_window_seconds
        if window_seconds is None:
            window_seconds = self._settings.integration_default_rate_window_seconds

        return ApiIdentity(
            key_id=record.id,
            kind=KeyKind.INTEGRATION,
            owner_id=record.id,
            owner_name=record.name,
            scopes=frozenset(record.scopes or ()),
            key_preview=record.api_key_preview,
            is_active=record.is_active,
            owner_is_active=record.is_active,
            plan=None,
            policy=RateLimitPolicy(limit=limit, window_seconds=window_seconds),
            integration_slug=record.slug,
        )

    async def record_usage(self, identity: ApiIdentity) -> None:
        """Bump last-used timestamp and request counter.

        Best-effort: failures are logged and never affect the decision.
        """
        model = ApiKey if identity.kind is KeyKind.LIVE else Integration
        stmt = (
            update(model)
            .where(model.id == identity.key_id)
            .values(
                last_used_at=datetime.now(UTC),
                request_count=model.request_count + 1,
            )
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(
                "api_key_usage_update_failed",
                key_id=str(identity.key_id),
                error=type(e).__name__,
            )

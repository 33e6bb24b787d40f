"""Shared fixtures for integration tests requiring live infrastructure."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

import pytest
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from waveorder.config import get_settings
from waveorder.storage.orm import (
    ApiKey,
    AuthAuditLog,
    Business,
    Integration,
    SubscriptionPlan,
)

# ── Engine ─────────────────────────────────────────────────────────


@pytest.fixture()
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Create an async engine from settings, disposed after each test."""
    engine = create_async_engine(
        get_settings().database_url,
        pool_size=5,
        max_overflow=0,
    )
    yield engine
    await engine.dispose()


# ── Session factory ────────────────────────────────────────────────


@pytest.fixture()
def session_factory(
    async_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Committed seeds (real commit + DELETE cleanup) ─────────────────


@pytest.fixture()
async def committed_business(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[uuid.UUID]:
    """Create a BUSINESS-plan business with a real commit.

    KeyStore and AuditLogger open their own sessions, so seeds must be
    committed. Cleans up keys, audit rows and the business afterwards.
    """
    suffix = uuid.uuid4().hex[:8]
    async with session_factory() as session:
        business = Business(
            name=f"test-business-{suffix}",
            slug=f"test-business-{suffix}",
            subscription_plan=SubscriptionPlan.BUSINESS,
        )
        session.add(business)
        await session.commit()
        business_id = business.id

    yield business_id

    async with session_factory() as session:
        await session.execute(
            AuthAuditLog.__table__.delete().where(AuthAuditLog.owner_id == business_id)
        )
        await session.execute(
            ApiKey.__table__.delete().where(ApiKey.business_id == business_id)
        )
        await session.execute(
            Business.__table__.delete().where(Business.id == business_id)
        )
        await session.commit()


@pytest.fixture()
async def integration_cleanup(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[list[uuid.UUID]]:
    """Collect integration ids created by a test and delete them afterwards."""
    created: list[uuid.UUID] = []
    yield created
    if not created:
        return
    async with session_factory() as session:
        await session.execute(
            Integration.__table__.delete().where(Integration.id.in_(created))
        )
        await session.commit()


# ── Redis fixture ─────────────────────────────────────────────────


@pytest.fixture()
async def redis_client() -> AsyncGenerator[redis.Redis]:
    """Create and close a real Redis client."""
    client = redis.from_url(get_settings().redis_url)
    yield client
    await client.aclose()

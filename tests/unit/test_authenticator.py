"""Tests for the request authentication state machine."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from starlette.requests import Request

from tests.fakes import FakeKeyStore
from waveorder.auth.audit import AuditEvent, AuditLogger
from waveorder.auth.authenticator import (
    AuthOutcome,
    RequestAuthenticator,
    extract_credential,
)
from waveorder.auth.context import ApiIdentity
from waveorder.auth.keys import KeyKind
from waveorder.auth.plans import RateLimitPolicy
from waveorder.auth.rate_limiter import InMemoryRateLimiter

IdentityFactory = Callable[..., ApiIdentity]


def _request(
    headers: dict[str, str] | None = None,
    path: str = "/api/v1/me",
    method: str = "GET",
) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": b"",
        "server": ("testserver", 80),
        "client": ("10.0.0.7", 51234),
        "headers": [
            (name.lower().encode(), value.encode())
            for name, value in (headers or {}).items()
        ],
    }
    return Request(scope)


def _bearer(key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {key}"}


@pytest.fixture()
def audit() -> AsyncMock:
    return AsyncMock(spec=AuditLogger)


@pytest.fixture()
def limiter() -> InMemoryRateLimiter:
    return InMemoryRateLimiter()


@pytest.fixture()
def authenticator(
    key_store: FakeKeyStore, limiter: InMemoryRateLimiter, audit: AsyncMock
) -> RequestAuthenticator:
    return RequestAuthenticator(key_store, limiter, audit, storage_timeout=0.5)  # type: ignore[arg-type]


def _last_event(audit: AsyncMock) -> AuditEvent:
    event: AuditEvent = audit.record.await_args.args[0]
    return event


class TestExtractCredential:
    def test_bearer(self) -> None:
        headers = {"authorization": "Bearer wo_live_abc"}
        assert extract_credential(headers, KeyKind.LIVE) == "wo_live_abc"

    def test_x_api_key(self) -> None:
        headers = {"x-api-key": "wo_live_abc"}
        assert extract_credential(headers, KeyKind.LIVE) == "wo_live_abc"

    def test_bearer_wins_over_header(self) -> None:
        headers = {"authorization": "Bearer wo_live_first", "x-api-key": "wo_live_second"}
        assert extract_credential(headers, KeyKind.LIVE) == "wo_live_first"

    def test_wrong_prefix_falls_through_to_header(self) -> None:
        headers = {"authorization": "Bearer some-jwt", "x-api-key": "wo_live_abc"}
        assert extract_credential(headers, KeyKind.LIVE) == "wo_live_abc"

    def test_integration_key_not_accepted_as_live(self) -> None:
        assert extract_credential({"x-api-key": "wo_int_abc"}, KeyKind.LIVE) is None

    def test_bare_prefix_rejected(self) -> None:
        assert extract_credential({"x-api-key": "wo_live_"}, KeyKind.LIVE) is None

    def test_basic_auth_ignored(self) -> None:
        assert extract_credential({"authorization": "Basic abc"}, KeyKind.LIVE) is None


class TestAuthenticate:
    async def test_admitted(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
        audit: AsyncMock,
    ) -> None:
        identity = make_identity()
        plain = key_store.issue(identity)

        result = await authenticator.authenticate(
            _request(_bearer(plain)), "products:read"
        )

        assert result.outcome is AuthOutcome.ADMITTED
        assert result.identity == identity
        assert result.rate is not None
        assert result.rate.remaining == 59
        assert key_store.usage == [identity.key_id]

        event = _last_event(audit)
        assert event.outcome == "admitted"
        assert event.key_id == identity.key_id
        assert event.path == "/api/v1/me"
        assert event.ip_address == "10.0.0.7"

    async def test_missing_credential(
        self, authenticator: RequestAuthenticator, audit: AsyncMock
    ) -> None:
        result = await authenticator.authenticate(_request(), "products:read")

        assert result.outcome is AuthOutcome.UNAUTHENTICATED
        assert result.reason == "missing_credential"
        assert _last_event(audit).outcome == "unauthenticated"

    async def test_unknown_key(self, authenticator: RequestAuthenticator) -> None:
        result = await authenticator.authenticate(
            _request({"X-API-Key": "wo_live_doesnotexist"}), "products:read"
        )
        assert result.outcome is AuthOutcome.UNAUTHENTICATED
        assert result.reason == "unknown_key"

    async def test_missing_scope_forbidden(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
    ) -> None:
        plain = key_store.issue(make_identity(scopes=frozenset({"orders:read"})))

        result = await authenticator.authenticate(
            _request(_bearer(plain)), "products:write"
        )

        assert result.outcome is AuthOutcome.FORBIDDEN
        assert result.reason == "missing_scope"
        assert key_store.usage == []

    async def test_revoked_key_forbidden(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
    ) -> None:
        plain = key_store.issue(make_identity())
        assert (await authenticator.authenticate(_request(_bearer(plain)))).admitted

        key_store.revoke(plain)
        result = await authenticator.authenticate(_request(_bearer(plain)))

        assert result.outcome is AuthOutcome.FORBIDDEN
        assert result.reason == "key_disabled"

    async def test_expired_key_forbidden(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
    ) -> None:
        plain = key_store.issue(
            make_identity(expires_at=datetime(2020, 1, 1, tzinfo=UTC))
        )
        result = await authenticator.authenticate(_request(_bearer(plain)))
        assert result.outcome is AuthOutcome.FORBIDDEN
        assert result.reason == "key_expired"

    async def test_regenerated_key_replaces_old(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
    ) -> None:
        old_plain = key_store.issue(make_identity())
        new_plain = key_store.regenerate(old_plain)

        old = await authenticator.authenticate(_request(_bearer(old_plain)))
        new = await authenticator.authenticate(_request(_bearer(new_plain)))

        assert old.outcome is AuthOutcome.UNAUTHENTICATED
        assert new.outcome is AuthOutcome.ADMITTED

    async def test_plan_restricted(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
    ) -> None:
        """A valid, scoped key on a plan without API access."""
        plain = key_store.issue(make_identity(plan="PRO", policy=None))

        result = await authenticator.authenticate(
            _request(_bearer(plain)), "products:read"
        )

        assert result.outcome is AuthOutcome.PLAN_RESTRICTED
        assert result.rate is None

    async def test_rate_limited_after_quota(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
        audit: AsyncMock,
    ) -> None:
        plain = key_store.issue(
            make_identity(policy=RateLimitPolicy(limit=3, window_seconds=60))
        )

        outcomes = [
            (await authenticator.authenticate(_request(_bearer(plain)))).outcome
            for _ in range(4)
        ]

        assert outcomes == [AuthOutcome.ADMITTED] * 3 + [AuthOutcome.RATE_LIMITED]
        assert _last_event(audit).reason == "quota_exhausted"

    async def test_rate_limited_carries_retry_after(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
    ) -> None:
        plain = key_store.issue(
            make_identity(policy=RateLimitPolicy(limit=1, window_seconds=30))
        )
        await authenticator.authenticate(_request(_bearer(plain)))

        result = await authenticator.authenticate(_request(_bearer(plain)))

        headers = result.headers()
        assert headers["X-RateLimit-Remaining"] == "0"
        assert 1 <= int(headers["Retry-After"]) <= 30

    async def test_each_key_has_own_quota(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
    ) -> None:
        policy = RateLimitPolicy(limit=1, window_seconds=60)
        first = key_store.issue(make_identity(policy=policy))
        second = key_store.issue(make_identity(policy=policy))

        assert (await authenticator.authenticate(_request(_bearer(first)))).admitted
        assert (await authenticator.authenticate(_request(_bearer(second)))).admitted

    async def test_integration_kind(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
        audit: AsyncMock,
    ) -> None:
        plain = key_store.issue(
            make_identity(kind=KeyKind.INTEGRATION, plan=None, integration_slug="acme")
        )

        as_live = await authenticator.authenticate(_request(_bearer(plain)))
        as_integration = await authenticator.authenticate(
            _request(_bearer(plain)), kind=KeyKind.INTEGRATION
        )

        assert as_live.outcome is AuthOutcome.UNAUTHENTICATED
        assert as_integration.outcome is AuthOutcome.ADMITTED
        assert _last_event(audit).key_kind == "integration"

    async def test_every_outcome_audited(
        self,
        authenticator: RequestAuthenticator,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
        audit: AsyncMock,
    ) -> None:
        plain = key_store.issue(make_identity(scopes=frozenset()))
        await authenticator.authenticate(_request())
        await authenticator.authenticate(_request(_bearer("wo_live_unknown")))
        await authenticator.authenticate(_request(_bearer(plain)), "products:read")

        outcomes = [c.args[0].outcome for c in audit.record.await_args_list]
        assert outcomes == ["unauthenticated", "unauthenticated", "forbidden"]


class TestTransientFailures:
    async def test_lookup_error_is_transient(
        self,
        limiter: InMemoryRateLimiter,
        audit: AsyncMock,
    ) -> None:
        store = MagicMock()
        store.resolve = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception()))
        authenticator = RequestAuthenticator(store, limiter, audit)

        result = await authenticator.authenticate(_request(_bearer("wo_live_abc")))

        assert result.outcome is AuthOutcome.TRANSIENT
        assert result.reason == "key_lookup_unavailable"

    async def test_lookup_timeout_is_transient(
        self,
        limiter: InMemoryRateLimiter,
        audit: AsyncMock,
    ) -> None:
        async def slow_resolve(plain_key: str) -> None:
            await asyncio.sleep(1)

        store = MagicMock()
        store.resolve = slow_resolve
        authenticator = RequestAuthenticator(
            store, limiter, audit, storage_timeout=0.01
        )

        result = await authenticator.authenticate(_request(_bearer("wo_live_abc")))

        assert result.outcome is AuthOutcome.TRANSIENT

    async def test_rate_limiter_error_is_transient(
        self,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
        audit: AsyncMock,
    ) -> None:
        limiter = MagicMock()
        limiter.check_and_consume = AsyncMock(
            side_effect=RedisConnectionError("connection refused")
        )
        authenticator = RequestAuthenticator(key_store, limiter, audit)  # type: ignore[arg-type]
        plain = key_store.issue(make_identity())

        result = await authenticator.authenticate(_request(_bearer(plain)))

        assert result.outcome is AuthOutcome.TRANSIENT
        assert result.reason == "rate_limiter_unavailable"
        assert not result.admitted

    async def test_usage_timeout_does_not_deny(
        self,
        limiter: InMemoryRateLimiter,
        key_store: FakeKeyStore,
        make_identity: IdentityFactory,
        audit: AsyncMock,
    ) -> None:
        async def slow_usage(identity: ApiIdentity) -> None:
            await asyncio.sleep(1)

        key_store.record_usage = slow_usage  # type: ignore[method-assign]
        authenticator = RequestAuthenticator(
            key_store,  # type: ignore[arg-type]
            limiter,
            audit,
            storage_timeout=0.01,
        )
        plain = key_store.issue(make_identity())

        result = await authenticator.authenticate(_request(_bearer(plain)))

        assert result.admitted


class TestAuditLogger:
    def _factory(self, session: AsyncMock) -> MagicMock:
        factory = MagicMock()
        factory.return_value.__aenter__.return_value = session
        factory.return_value.__aexit__.return_value = None
        return factory

    async def test_writes_and_commits(self) -> None:
        session = AsyncMock()
        session.add = MagicMock()
        audit = AuditLogger(self._factory(session))

        await audit.record(AuditEvent(key_kind="live", outcome="admitted"))

        session.add.assert_called_once()
        session.commit.assert_awaited_once()

    async def test_storage_error_swallowed(self) -> None:
        session = AsyncMock()
        session.add = MagicMock()
        session.flush.side_effect = SQLAlchemyError("disk full")
        audit = AuditLogger(self._factory(session))

        await audit.record(AuditEvent(key_kind="live", outcome="forbidden"))

        session.commit.assert_not_awaited()

    async def test_write_timeout_is_bounded(self) -> None:
        async def stalled_flush() -> None:
            await asyncio.sleep(3)

        session = AsyncMock()
        session.add = MagicMock()
        session.flush.side_effect = stalled_flush
        audit = AuditLogger(self._factory(session), timeout=0.05)

        started = time.monotonic()
        await audit.record(AuditEvent(key_kind="live", outcome="transient"))

        assert time.monotonic() - started < 1.0
        session.commit.assert_not_awaited()

    async def test_stalled_store_fails_fast_end_to_end(self) -> None:
        async def stalled_resolve(plain_key: str) -> None:
            await asyncio.sleep(3)

        async def stalled_flush() -> None:
            await asyncio.sleep(3)

        store = MagicMock()
        store.resolve = stalled_resolve
        session = AsyncMock()
        session.add = MagicMock()
        session.flush.side_effect = stalled_flush
        authenticator = RequestAuthenticator(
            store,
            InMemoryRateLimiter(),
            AuditLogger(self._factory(session), timeout=0.05),
            storage_timeout=0.05,
        )

        started = time.monotonic()
        result = await authenticator.authenticate(_request(_bearer("wo_live_abc")))

        assert result.outcome is AuthOutcome.TRANSIENT
        assert time.monotonic() - started < 1.0

"""Single authentication entry point for every protected route.

Per request::

    extract credential -> resolve -> authorize -> rate check -> admitted

Each stage can end the flow with a typed failure. Expected failures are
returned as values; storage errors and timeouts become ``TRANSIENT`` and
are never treated as success.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request

from waveorder.auth.audit import AuditEvent, AuditLogger
from waveorder.auth.context import ApiIdentity
from waveorder.auth.gate import GateFailure, authorize
from waveorder.auth.key_store import KeyStore
from waveorder.auth.keys import KeyKind
from waveorder.auth.rate_limiter import RateDecision, RateLimiter

logger = structlog.get_logger()

STORAGE_ERRORS: tuple[type[BaseException], ...] = (
    SQLAlchemyError,
    RedisError,
    TimeoutError,
    ConnectionError,
    OSError,
)


class AuthOutcome(StrEnum):
    ADMITTED = "admitted"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    PLAN_RESTRICTED = "plan_restricted"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class AuthResult:
    """Terminal state of one authentication attempt."""

    outcome: AuthOutcome
    identity: ApiIdentity | None = None
    rate: RateDecision | None = None
    reason: str | None = None

    @property
    def admitted(self) -> bool:
        return self.outcome is AuthOutcome.ADMITTED

    def headers(self) -> dict[str, str]:
        return self.rate.headers() if self.rate is not None else {}


def extract_credential(headers: Mapping[str, str], kind: KeyKind) -> str | None:
    """Pull a key of the expected kind from request headers.

    ``Authorization: Bearer <key>`` is checked first, then ``X-API-Key``.
    A key with the wrong prefix counts as absent.
    """
    authorization = headers.get("authorization", "")
    if authorization.startswith("Bearer "):
        key = authorization[len("Bearer ") :].strip()
        if key.startswith(kind.value) and len(key) > len(kind.value):
            return key

    key = headers.get("x-api-key", "").strip()
    if key.startswith(kind.value) and len(key) > len(kind.value):
        return key
    return None


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class RequestAuthenticator:
    """Composes key lookup, gate, rate limiter and audit into one decision."""

    def __init__(
        self,
        key_store: KeyStore,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        *,
        storage_timeout: float = 2.0,
    ) -> None:
        self._key_store = key_store
        self._rate_limiter = rate_limiter
        self._audit = audit
        self._storage_timeout = storage_timeout

    async def authenticate(
        self,
        request: Request,
        required_scope: str | None = None,
        kind: KeyKind = KeyKind.LIVE,
    ) -> AuthResult:
        """Evaluate one request. Never raises for expected failure kinds."""
        result = await self._evaluate(request, required_scope, kind)
        identity = result.identity
        await self._audit.record(
            AuditEvent(
                key_kind=kind.name.lower(),
                outcome=str(result.outcome),
                reason=result.reason,
                required_scope=required_scope,
                key_id=identity.key_id if identity else None,
                owner_id=identity.owner_id if identity else None,
                key_preview=identity.key_preview if identity else None,
                method=request.method,
                path=request.url.path,
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        )
        return result

    async def _evaluate(
        self,
        request: Request,
        required_scope: str | None,
        kind: KeyKind,
    ) -> AuthResult:
        plain_key = extract_credential(request.headers, kind)
        if plain_key is None:
            return AuthResult(AuthOutcome.UNAUTHENTICATED, reason="missing_credential")

        try:
            identity = await asyncio.wait_for(
                self._key_store.resolve(plain_key), timeout=self._storage_timeout
            )
        except STORAGE_ERRORS as e:
            logger.error("auth_key_lookup_failed", error=type(e).__name__)
            return AuthResult(AuthOutcome.TRANSIENT, reason="key_lookup_unavailable")

        if identity is None:
            return AuthResult(AuthOutcome.UNAUTHENTICATED, reason="unknown_key")

        decision = authorize(identity, required_scope)
        if not decision.allowed:
            outcome = (
                AuthOutcome.PLAN_RESTRICTED
                if decision.reason is GateFailure.PLAN_RESTRICTED
                else AuthOutcome.FORBIDDEN
            )
            return AuthResult(outcome, identity=identity, reason=str(decision.reason))

        # The gate rejects identities without a policy.
        policy = identity.policy
        assert policy is not None

        await self._touch(identity)

        try:
            rate = await asyncio.wait_for(
                self._rate_limiter.check_and_consume(identity.rate_limit_key, policy),
                timeout=self._storage_timeout,
            )
        except STORAGE_ERRORS as e:
            logger.error("auth_rate_limit_failed", error=type(e).__name__)
            return AuthResult(
                AuthOutcome.TRANSIENT,
                identity=identity,
                reason="rate_limiter_unavailable",
            )

        if not rate.allowed:
            return AuthResult(
                AuthOutcome.RATE_LIMITED,
                identity=identity,
                rate=rate,
                reason="quota_exhausted",
            )
        return AuthResult(AuthOutcome.ADMITTED, identity=identity, rate=rate)

    async def _touch(self, identity: ApiIdentity) -> None:
        try:
            await asyncio.wait_for(
                self._key_store.record_usage(identity), timeout=self._storage_timeout
            )
        except TimeoutError:
            logger.warning("api_key_usage_update_timeout", key_id=str(identity.key_id))

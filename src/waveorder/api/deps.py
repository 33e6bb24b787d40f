"""FastAPI dependency injection."""

from __future__ import annotations

import secrets
from collections.abc import Callable, Coroutine
from typing import Any, cast

from fastapi import Depends, Header, HTTPException, Request, Response

from waveorder.auth.authenticator import AuthOutcome, AuthResult, RequestAuthenticator
from waveorder.auth.context import ApiIdentity
from waveorder.auth.keys import KeyKind
from waveorder.config import Settings, get_settings
from waveorder.storage.database import get_session

__all__ = [
    "get_authenticator",
    "get_session",
    "require_admin",
    "require_integration",
    "require_scope",
]

# Stable status code and message for every denial kind.
DENIAL_RESPONSES: dict[AuthOutcome, tuple[int, str]] = {
    AuthOutcome.UNAUTHENTICATED: (
        401,
        "Missing or invalid API key. Use Authorization: Bearer <key> "
        "or the X-API-Key header.",
    ),
    AuthOutcome.FORBIDDEN: (403, "API key is not permitted to perform this request"),
    AuthOutcome.PLAN_RESTRICTED: (403, "API access requires the Business plan"),
    AuthOutcome.RATE_LIMITED: (429, "Rate limit exceeded. Try again later."),
    AuthOutcome.TRANSIENT: (
        503,
        "Authentication temporarily unavailable. Retry the request.",
    ),
}


async def get_authenticator(request: Request) -> RequestAuthenticator:
    """Retrieve RequestAuthenticator from app state.

    Initialized during lifespan startup.
    """
    return cast(RequestAuthenticator, request.app.state.authenticator)


_authenticator_dep = Depends(get_authenticator)


def raise_for_denial(result: AuthResult) -> None:
    """Map a non-admitted result to an HTTPException.

    The body carries a machine-readable ``code`` equal to the outcome
    value so clients can branch on it.
    """
    status_code, message = DENIAL_RESPONSES[result.outcome]
    detail: dict[str, Any] = {"code": str(result.outcome), "message": message}
    if result.outcome is AuthOutcome.RATE_LIMITED and result.rate is not None:
        detail["retry_after"] = result.rate.reset_in
    raise HTTPException(
        status_code=status_code,
        detail=detail,
        headers=result.headers() or None,
    )


def _require(
    required_scope: str | None, kind: KeyKind
) -> Callable[..., Coroutine[Any, Any, ApiIdentity]]:
    async def _check(
        request: Request,
        response: Response,
        authenticator: RequestAuthenticator = _authenticator_dep,
    ) -> ApiIdentity:
        result = await authenticator.authenticate(request, required_scope, kind)
        if not result.admitted or result.identity is None:
            raise_for_denial(result)
        for name, value in result.headers().items():
            response.headers[name] = value
        return cast(ApiIdentity, result.identity)

    return _check


def require_scope(
    required_scope: str | None = None,
) -> Callable[..., Coroutine[Any, Any, ApiIdentity]]:
    """Dependency factory: authenticate a business key and check one scope.

    Usage as parameter dependency (returns ApiIdentity)::

        async def endpoint(
            identity: ApiIdentity = Depends(require_scope("products:read")),
        ): ...

    Raises:
        HTTPException 401: missing or unknown key.
        HTTPException 403: key disabled, scope missing, or plan restricted.
        HTTPException 429: rate limit exceeded (includes Retry-After header).
        HTTPException 503: storage unavailable.
    """
    return _require(required_scope, KeyKind.LIVE)


def require_integration(
    required_scope: str | None = None,
) -> Callable[..., Coroutine[Any, Any, ApiIdentity]]:
    """Dependency factory for platform integration keys (``wo_int_``)."""
    return _require(required_scope, KeyKind.INTEGRATION)


_settings_dep = Depends(get_settings)


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    settings: Settings = _settings_dep,
) -> None:
    """Guard for the administrative routes.

    Raises:
        HTTPException 401: token missing, wrong, or not configured.
    """
    expected = settings.admin_api_token
    if (
        expected is None
        or x_admin_token is None
        or not secrets.compare_digest(
            x_admin_token.encode(), expected.get_secret_value().encode()
        )
    ):
        raise HTTPException(status_code=401, detail="Invalid admin token")

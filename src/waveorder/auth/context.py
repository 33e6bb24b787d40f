"""Resolved caller identity for request processing."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from waveorder.auth.keys import KeyKind
from waveorder.auth.plans import RateLimitPolicy


@dataclass(frozen=True)
class ApiIdentity:
    """Identity behind a presented key, injected into protected routes.

    Built from the issued key record even when that record is disabled;
    the gate decides whether the identity may proceed.

    ``owner_id`` is the business id for ``LIVE`` keys and the integration
    id for ``INTEGRATION`` keys. ``plan`` is ``None`` for integrations.
    ``policy`` is ``None`` when the owner has no API entitlement.
    """

    key_id: uuid.UUID
    kind: KeyKind
    owner_id: uuid.UUID
    owner_name: str
    scopes: frozenset[str]
    key_preview: str
    is_active: bool
    owner_is_active: bool
    plan: str | None
    policy: RateLimitPolicy | None
    expires_at: datetime | None = None
    revoked_at: datetime | None = None
    integration_slug: str | None = None

    @property
    def rate_limit_key(self) -> str:
        return f"{self.kind.name.lower()}:{self.key_id}"

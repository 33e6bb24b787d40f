"""Scope and plan gate: decide whether a resolved identity may proceed."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

import structlog

from waveorder.auth.context import ApiIdentity
from waveorder.auth.keys import KeyKind
from waveorder.auth.scopes import has_scope

logger = structlog.get_logger()


class GateFailure(StrEnum):
    KEY_DISABLED = "key_disabled"
    KEY_REVOKED = "key_revoked"
    KEY_EXPIRED = "key_expired"
    OWNER_INACTIVE = "owner_inactive"
    MISSING_SCOPE = "missing_scope"
    PLAN_RESTRICTED = "plan_restricted"


@dataclass(frozen=True)
class GateDecision:
    """Gate verdict.

    ``failures`` lists every failed check in evaluation order; the first
    one determines the reported reason.
    """

    failures: tuple[GateFailure, ...] = field(default_factory=tuple)

    @property
    def allowed(self) -> bool:
        return not self.failures

    @property
    def reason(self) -> GateFailure | None:
        return self.failures[0] if self.failures else None


def authorize(
    identity: ApiIdentity,
    required_scope: str | None,
    *,
    now: datetime | None = None,
) -> GateDecision:
    """Run all checks against ``identity``.

    Order: key state (disabled, revoked, expired, inactive owner), scope,
    plan entitlement. ``required_scope=None`` skips the scope check.
    """
    now = now or datetime.now(UTC)
    failures: list[GateFailure] = []

    if identity.revoked_at is not None:
        failures.append(GateFailure.KEY_REVOKED)
    elif not identity.is_active:
        failures.append(GateFailure.KEY_DISABLED)
    if identity.expires_at is not None and identity.expires_at <= now:
        failures.append(GateFailure.KEY_EXPIRED)
    if not identity.owner_is_active and identity.kind is KeyKind.LIVE:
        failures.append(GateFailure.OWNER_INACTIVE)

    if required_scope is not None and not has_scope(identity.scopes, required_scope):
        failures.append(GateFailure.MISSING_SCOPE)

    if identity.policy is None:
        failures.append(GateFailure.PLAN_RESTRICTED)

    decision = GateDecision(failures=tuple(failures))
    if not decision.allowed:
        logger.debug(
            "auth_gate_rejected",
            key_id=str(identity.key_id),
            required_scope=required_scope,
            failures=[str(f) for f in decision.failures],
        )
    return decision

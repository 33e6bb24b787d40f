"""Plan entitlements and rate-limit policies."""

from __future__ import annotations

from dataclasses import dataclass

from waveorder.config import Settings


@dataclass(frozen=True)
class RateLimitPolicy:
    """Requests allowed per rolling window of ``window_seconds``."""

    limit: int
    window_seconds: int


def has_api_access(plan: str, settings: Settings) -> bool:
    return plan in settings.api_enabled_plans


def plan_policy(plan: str, settings: Settings) -> RateLimitPolicy | None:
    """Rate-limit policy for a business plan, ``None`` without API access."""
    if not has_api_access(plan, settings):
        return None
    return RateLimitPolicy(
        limit=settings.api_rate_limit,
        window_seconds=settings.api_rate_window_seconds,
    )

"""Rolling-window rate limiters.

A window opens with the first admitted request for a key and lasts
``window_seconds``. Within a window at most ``limit`` requests are
admitted; a rejected request never increments the counter.
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock

import redis.asyncio as redis

from waveorder.auth.plans import RateLimitPolicy


@dataclass(frozen=True)
class RateDecision:
    """Outcome of a check-and-consume call.

    ``reset_in`` is the number of whole seconds (rounded up) until the
    current window ends.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_in: int

    def headers(self) -> dict[str, str]:
        """Quota headers for API consumers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(self.reset_in, 1))
        return headers


class RateLimiter(ABC):
    """Keyed check-and-consume counter."""

    @abstractmethod
    async def check_and_consume(
        self, key: str, policy: RateLimitPolicy
    ) -> RateDecision:
        """Admit and count one request for ``key``, or reject without counting."""


def _reject_all(policy: RateLimitPolicy) -> RateDecision:
    return RateDecision(
        allowed=False,
        limit=policy.limit,
        remaining=0,
        reset_in=policy.window_seconds,
    )


class InMemoryRateLimiter(RateLimiter):
    """Rolling window rate limiter.

    Thread-safe via Lock. Single-instance only.
    For multi-instance deployments use RedisRateLimiter.
    """

    def __init__(self) -> None:
        # key -> (window_start, count, window_seconds)
        self._windows: dict[str, tuple[float, int, int]] = {}
        self._lock = Lock()

    async def check_and_consume(
        self, key: str, policy: RateLimitPolicy
    ) -> RateDecision:
        return self.check(key, policy)

    def check(self, key: str, policy: RateLimitPolicy) -> RateDecision:
        """Synchronous check-and-consume.

        Args:
            key: Rate limit key, e.g. ``"live:{key_id}"``.
            policy: Limit and window length for this key.
        """
        if policy.limit < 1:
            return _reject_all(policy)

        now = time.monotonic()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window[0] + window[2]:
                window = (now, 0, policy.window_seconds)

            start, count, window_seconds = window
            reset_in = math.ceil(start + window_seconds - now)

            if count + 1 > policy.limit:
                self._windows[key] = window
                return RateDecision(
                    allowed=False,
                    limit=policy.limit,
                    remaining=0,
                    reset_in=reset_in,
                )

            count += 1
            self._windows[key] = (start, count, window_seconds)
            return RateDecision(
                allowed=True,
                limit=policy.limit,
                remaining=policy.limit - count,
                reset_in=reset_in,
            )

    def cleanup(self) -> int:
        """Remove all elapsed windows. Call periodically.

        Returns:
            Number of keys cleaned up.
        """
        now = time.monotonic()
        with self._lock:
            expired = [
                key
                for key, (start, _count, window_seconds) in self._windows.items()
                if now >= start + window_seconds
            ]
            for key in expired:
                del self._windows[key]
        return len(expired)


# KEYS[1] = counter key, ARGV[1] = limit, ARGV[2] = window in ms.
# Returns {allowed, count, ttl_ms}. Runs atomically inside Redis, so
# concurrent callers for the same key are serialized.
CHECK_AND_CONSUME_SCRIPT = """
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local ttl = redis.call('PTTL', KEYS[1])

if current == 0 or ttl < 0 then
    redis.call('SET', KEYS[1], 1, 'PX', window_ms)
    return {1, 1, window_ms}
end

if current + 1 > limit then
    return {0, current, ttl}
end

redis.call('INCR', KEYS[1])
return {1, current + 1, ttl}
"""


class RedisRateLimiter(RateLimiter):
    """Shared rate limiter backed by Redis.

    The window is a counter key with a TTL equal to the window length,
    so window timing follows the Redis server clock for every instance.
    """

    def __init__(
        self, client: redis.Redis, key_prefix: str = "waveorder:ratelimit"
    ) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._script = client.register_script(CHECK_AND_CONSUME_SCRIPT)

    async def check_and_consume(
        self, key: str, policy: RateLimitPolicy
    ) -> RateDecision:
        if policy.limit < 1:
            return _reject_all(policy)

        allowed, count, ttl_ms = await self._script(
            keys=[f"{self._key_prefix}:{key}"],
            args=[policy.limit, policy.window_seconds * 1000],
        )
        return RateDecision(
            allowed=bool(allowed),
            limit=policy.limit,
            remaining=max(policy.limit - int(count), 0),
            reset_in=math.ceil(int(ttl_ms) / 1000),
        )

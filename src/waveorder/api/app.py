"""FastAPI application with lifespan management."""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as redis
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from waveorder.api.middleware import RequestLoggingMiddleware
from waveorder.api.routes.admin import router as admin_router
from waveorder.api.routes.public import router as public_router
from waveorder.auth.audit import AuditLogger
from waveorder.auth.authenticator import RequestAuthenticator
from waveorder.auth.key_store import KeyStore
from waveorder.auth.rate_limiter import (
    InMemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
)
from waveorder.config import RateLimitBackend, Settings, settings
from waveorder.logging_config import configure_logging
from waveorder.storage.database import async_session, engine

logger = structlog.get_logger()

CLEANUP_INTERVAL_SECONDS = 300
HEALTH_CHECK_TIMEOUT = 5.0


async def _cleanup_loop(limiter: InMemoryRateLimiter) -> None:
    """Periodic cleanup of elapsed rate limit windows."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
        try:
            cleaned = await asyncio.to_thread(limiter.cleanup)
            if cleaned:
                logger.debug("rate_limiter_cleanup", keys_removed=cleaned)
        except Exception:
            logger.exception("rate_limiter_cleanup_error")


def create_rate_limiter(
    app_settings: Settings, redis_client: redis.Redis | None
) -> RateLimiter:
    """Pick the rate limiter backend from settings.

    The memory backend is per-process and only suitable for a single
    instance (development, tests).
    """
    if app_settings.rate_limit_backend == RateLimitBackend.MEMORY:
        return InMemoryRateLimiter()
    if redis_client is None:
        raise RuntimeError("Redis rate limiter backend requires a Redis client")
    return RedisRateLimiter(redis_client, key_prefix=app_settings.rate_limit_key_prefix)


def create_authenticator(
    app_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiter: RateLimiter,
) -> RequestAuthenticator:
    return RequestAuthenticator(
        key_store=KeyStore(session_factory, app_settings),
        rate_limiter=rate_limiter,
        audit=AuditLogger(
            session_factory, timeout=app_settings.auth_storage_timeout_seconds
        ),
        storage_timeout=app_settings.auth_storage_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application startup and shutdown.

    Startup:
        - Configure logging.
        - Connect Redis (redis backend only).
        - Build the rate limiter and authenticator.
        - Start rate limiter cleanup task (memory backend only).
    Shutdown:
        - Cancel cleanup task, close Redis.
        - Dispose database engine (close connection pool).
    """
    configure_logging(
        environment=str(settings.environment),
        log_level=settings.log_level,
    )

    redis_client = None
    if settings.rate_limit_backend == RateLimitBackend.REDIS:
        redis_client = redis.from_url(settings.redis_url)
    app.state.redis = redis_client

    rate_limiter = create_rate_limiter(settings, redis_client)
    app.state.authenticator = create_authenticator(settings, async_session, rate_limiter)

    cleanup_task = None
    if isinstance(rate_limiter, InMemoryRateLimiter):
        cleanup_task = asyncio.create_task(_cleanup_loop(rate_limiter))

    logger.info(
        "app_started",
        environment=str(settings.environment),
        rate_limit_backend=str(settings.rate_limit_backend),
    )
    yield

    if cleanup_task is not None:
        cleanup_task.cancel()
    if redis_client is not None:
        await redis_client.aclose()
    await engine.dispose()
    logger.info("app_stopped")


app = FastAPI(
    title="WaveOrder API",
    description="API key authentication and access control for WaveOrder",
    version="0.1.0",
    lifespan=lifespan,
    debug=settings.is_dev,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
    expose_headers=[
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
        "X-Request-ID",
    ],
)

PROBE_ERRORS = (TimeoutError, SQLAlchemyError, RedisError, ConnectionError, OSError)


async def _probe_db() -> None:
    async with async_session() as session:
        await session.execute(text("SELECT 1"))


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """Deep health check of the stores the authenticator depends on.

    Redis is only probed when it backs the rate limiter.
    """
    probes: dict[str, Callable[[], Awaitable[Any]]] = {"db": _probe_db}
    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is not None:
        probes["redis"] = redis_client.ping

    checks: dict[str, str] = {}
    for name, probe in probes.items():
        try:
            await asyncio.wait_for(probe(), timeout=HEALTH_CHECK_TIMEOUT)
            checks[name] = "ok"
        except PROBE_ERRORS as e:
            logger.warning("health_check_failed", check=name, error=type(e).__name__)
            checks[name] = f"error: {type(e).__name__}"

    overall = "ok" if all(v == "ok" for v in checks.values()) else "degraded"
    return JSONResponse(
        status_code=200 if overall == "ok" else 503,
        content={
            "status": overall,
            "checks": checks,
            "rate_limit_backend": str(settings.rate_limit_backend),
            "timestamp": datetime.now(UTC).isoformat(timespec="seconds"),
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Catch-all handler for unhandled exceptions."""
    logger.error("unhandled_exception", exc_info=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


app.include_router(public_router, prefix="/api")
app.include_router(admin_router, prefix="/api")

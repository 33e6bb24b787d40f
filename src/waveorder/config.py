"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache

from pydantic import SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class RateLimitBackend(StrEnum):
    REDIS = "redis"
    MEMORY = "memory"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Secrets use SecretStr to prevent accidental logging.
    Database URL is assembled from individual components to match
    the official PostgreSQL Docker image environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "DEBUG"
    # --- CORS ---
    cors_allowed_origins: list[str] = []
    cors_allow_credentials: bool = False
    cors_allowed_methods: list[str] = ["GET", "POST", "DELETE"]
    cors_allowed_headers: list[str] = [
        "Content-Type",
        "Authorization",
        "X-API-Key",
        "X-Admin-Token",
    ]

    # --- PostgreSQL ---
    postgres_user: str = "waveorder"
    postgres_password: SecretStr = SecretStr("secret")
    postgres_db: str = "waveorder"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        """Assemble database URL from components.

        Uses psycopg v3 driver which supports both sync (create_engine)
        and async (create_async_engine) modes natively.
        """
        password = self.postgres_password.get_secret_value()
        return (
            f"postgresql+psycopg://{self.postgres_user}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"

    # --- Admin surface ---
    # Unset token disables the admin routes entirely (every call gets 401).
    admin_api_token: SecretStr | None = None

    # --- API access ---
    # Plans listed here are entitled to the public API.
    api_enabled_plans: list[str] = ["BUSINESS"]
    api_rate_limit: int = 60
    api_rate_window_seconds: int = 60
    max_active_keys_per_business: int = 5
    rate_limit_backend: RateLimitBackend = RateLimitBackend.REDIS
    rate_limit_key_prefix: str = "waveorder:ratelimit"
    # Deadline for each storage round-trip made while authenticating.
    auth_storage_timeout_seconds: float = 2.0

    # --- Integrations ---
    integration_default_rate_limit: int = 60
    integration_default_rate_window_seconds: int = 60

    # --- Convenience properties ---
    @property
    def is_dev(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton.

    Usage::

        from waveorder.config import get_settings
        settings = get_settings()

    Or for dependency injection in FastAPI::

        @app.get("/")
        def root(settings: Settings = Depends(get_settings)):
            ...
    """
    return Settings()


settings = get_settings()

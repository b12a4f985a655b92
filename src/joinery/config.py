"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache

from pydantic import BaseModel, Field, SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

from joinery.auth.context import AuthLevel


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class RateLimitBackend(StrEnum):
    MEMORY = "memory"
    REDIS = "redis"


class RateLimitPolicy(BaseModel):
    """Request budget for one auth level: ``limit`` requests per window.

    A limit of 0 disables limiting for that tier.
    """

    limit: int = Field(ge=0)
    window_seconds: int = Field(default=60, gt=0)


def _default_tiers() -> dict[AuthLevel, RateLimitPolicy]:
    return {
        AuthLevel.ANONYMOUS: RateLimitPolicy(limit=30),
        AuthLevel.BEARER: RateLimitPolicy(limit=100),
        AuthLevel.API_KEY: RateLimitPolicy(limit=100),
        AuthLevel.ADMIN: RateLimitPolicy(limit=1000),
    }


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Secrets use SecretStr to prevent accidental logging.
    Database URL is assembled from individual components to match
    the official PostgreSQL Docker image environment variables.
    Nested rate limit tables are read from JSON-encoded variables, e.g.
    ``RATE_LIMIT_TIERS='{"anonymous": {"limit": 10}}'``.
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
        "X-Session-Id",
    ]

    # --- PostgreSQL ---
    postgres_user: str = "joinery"
    postgres_password: SecretStr = SecretStr("secret")
    postgres_db: str = "joinery"
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

    # --- JWT ---
    jwt_secret_key: SecretStr = SecretStr("change-me-in-production-please-32b")
    jwt_issuer: str = "joinery-server"
    jwt_audience: str = "joinery-clients"
    jwt_access_token_minutes: int = Field(default=60, gt=0)
    jwt_refresh_token_days: int = Field(default=7, gt=0)

    # --- Sessions ---
    session_lifetime_hours: int = Field(default=24, gt=0)
    # 0 disables the idle check
    session_idle_timeout_minutes: int = Field(default=120, ge=0)
    max_concurrent_sessions: int = Field(default=5, gt=0)

    # --- Rate limiting ---
    rate_limit_backend: RateLimitBackend = RateLimitBackend.MEMORY
    rate_limit_tiers: dict[AuthLevel, RateLimitPolicy] = Field(
        default_factory=_default_tiers
    )
    # Path prefix (e.g. "/api/admin") -> tier overrides; longest prefix wins
    rate_limit_endpoint_overrides: dict[str, dict[AuthLevel, RateLimitPolicy]] = {}

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

        from joinery.config import get_settings
        settings = get_settings()
    """
    return Settings()


settings = get_settings()

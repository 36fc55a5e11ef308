"""Application configuration using pydantic-settings."""
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str
    db_pool_size: int = Field(default=10, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, validation_alias="DB_MAX_OVERFLOW")

    # Auth0
    auth0_domain: str = Field(default="", validation_alias="AUTH0_DOMAIN")
    auth0_audience: str = Field(default="", validation_alias="AUTH0_AUDIENCE")
    auth0_client_id: str = Field(default="", validation_alias="AUTH0_CLIENT_ID")

    # Development mode - bypasses auth for local development
    dev_mode: bool = Field(default=False, validation_alias="DEV_MODE")

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS",
    )

    # Redis - fans change events out between API processes
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=20, validation_alias="REDIS_POOL_SIZE")

    # Realtime change feed
    realtime_channel_prefix: str = Field(
        default="bookmarks:changes", validation_alias="REALTIME_CHANNEL_PREFIX",
    )
    realtime_queue_size: int = Field(default=256, validation_alias="REALTIME_QUEUE_SIZE")
    realtime_heartbeat_seconds: float = Field(
        default=15.0, validation_alias="REALTIME_HEARTBEAT_SECONDS",
    )

    # Field length limits
    max_title_length: int = Field(default=500, validation_alias="MAX_TITLE_LENGTH")
    max_url_length: int = Field(default=2048, validation_alias="MAX_URL_LENGTH")

    @model_validator(mode="after")
    def validate_dev_mode_security(self) -> "Settings":
        """
        Prevent DEV_MODE from being enabled with a production database.

        DEV_MODE completely bypasses authentication, so we must ensure it's only
        used with local development databases. SQLite URLs are always local.
        """
        if not self.dev_mode:
            return self

        try:
            url = make_url(self.database_url)
        except ArgumentError:
            # If we can't parse the URL, block DEV_MODE (fail-safe)
            url = None

        if url is not None and url.get_backend_name() == "sqlite":
            return self

        hostname = (url.host if url is not None else None) or ""
        local_hosts = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
        if hostname.lower() not in local_hosts:
            raise ValueError(
                f"DEV_MODE cannot be enabled with a non-local database. "
                f"Database host '{hostname}' appears to be a production database. "
                f"DEV_MODE bypasses all authentication and must only be used locally.",
            )

        return self

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def auth0_issuer(self) -> str:
        """Get the Auth0 issuer URL."""
        return f"https://{self.auth0_domain}/"

    @property
    def auth0_jwks_url(self) -> str:
        """Get the Auth0 JWKS URL for fetching public keys."""
        return f"https://{self.auth0_domain}/.well-known/jwks.json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

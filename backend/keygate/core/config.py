"""Application-wide settings for the key gateway."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")

    # Access tokens
    jwt_issuer: str = Field(default="keygate", env="JWT_ISSUER")
    jwt_audience_console: str = Field(default="keygate/console", env="JWT_AUDIENCE_CONSOLE")
    jwt_audience_api: str = Field(default="keygate/api", env="JWT_AUDIENCE_API")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    jwt_secret: Optional[str] = Field(default=None, env="JWT_SECRET")
    # RS256/ES256 signing reads PEM files instead of the shared secret
    jwt_private_key_path: Optional[str] = Field(default=None, env="JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: Optional[str] = Field(default=None, env="JWT_PUBLIC_KEY_PATH")
    jwt_leeway_seconds: int = Field(default=10, env="JWT_LEEWAY_SECONDS")
    access_token_ttl_seconds: int = Field(default=900, env="ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = Field(
        default=30 * 24 * 3600, env="REFRESH_TOKEN_TTL_SECONDS"
    )

    # Secret hashing (scrypt cost parameters)
    scrypt_n: int = Field(default=2**14, env="SCRYPT_N")
    scrypt_r: int = Field(default=8, env="SCRYPT_R")
    scrypt_p: int = Field(default=1, env="SCRYPT_P")

    # Lineage walks never go deeper than this
    lineage_max_depth: int = Field(default=32, env="LINEAGE_MAX_DEPTH")

    # Audit events fall back to JSONL when no database is configured
    audit_log_store_path: str = Field(
        default="storage/audit_events.jsonl", env="AUDIT_LOG_STORE_PATH"
    )

    # Basic auth for admin endpoints (optional)
    auth_basic_username: Optional[str] = Field(default=None, env="AUTH_BASIC_USERNAME")
    auth_basic_password_hash: Optional[str] = Field(
        default=None, env="AUTH_BASIC_PASSWORD_HASH"
    )
    auth_basic_password_plain: Optional[str] = Field(
        default=None, env="AUTH_BASIC_PASSWORD_PLAIN"
    )

    # Credential endpoint rate limiting, per client IP
    auth_rate_window_seconds: int = Field(default=60, env="AUTH_RATE_WINDOW_SECONDS")
    auth_rate_max_requests: int = Field(default=10, env="AUTH_RATE_MAX_REQUESTS")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]

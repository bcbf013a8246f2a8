"""
Configuration management using Pydantic Settings.
Loads MARKDECO_* environment variables (or a .env file) and provides the
defaults for fetchers and cache storage.
"""

import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MARKDECO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Fetcher
    user_agent: str = Field(
        default="mark-deco/1.0",
        description="User-Agent header sent with every request",
    )
    fetch_timeout_ms: int = Field(
        default=60000,
        ge=1,
        description="Per-request timeout in milliseconds",
    )

    # Cache backend
    cache_enabled: bool = Field(
        default=True,
        description="Cache fetched responses",
    )
    cache_backend: Literal["memory", "filesystem", "local"] = Field(
        default="memory",
        description="Storage backend for the fetch cache",
    )
    cache_dir: str = Field(
        default=".cache/markdeco",
        description="Directory used by the filesystem backend",
    )
    cache_key_prefix: str = Field(
        default="cache:",
        description="Key namespace used by the local key-value backend",
    )
    cache_compression: bool = Field(
        default=True,
        description="Gzip cache files written by the filesystem backend",
    )

    # Cache TTL settings (milliseconds)
    cache_ttl_ms: Optional[int] = Field(
        default=None,
        ge=0,
        description="TTL for successful responses; unset caches forever",
    )
    cache_failures: bool = Field(
        default=False,
        description="Also cache failed requests (negative caching)",
    )
    failure_cache_ttl_ms: Optional[int] = Field(
        default=5 * 60 * 1000,
        ge=0,
        description="TTL for cached failures",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("user_agent")
    @classmethod
    def validate_user_agent(cls, v: str) -> str:
        """Ensure the user agent is not empty."""
        if not v or v.strip() == "":
            raise ValueError("MARKDECO_USER_AGENT must not be empty")
        return v.strip()

    @field_validator("cache_dir")
    @classmethod
    def validate_cache_dir(cls, v: str) -> str:
        """Ensure the cache directory is a usable path."""
        v = v.strip()
        if not v:
            raise ValueError("MARKDECO_CACHE_DIR must not be empty")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings singleton

    Raises:
        ValidationError: If environment variables are present but invalid
    """
    return Settings()

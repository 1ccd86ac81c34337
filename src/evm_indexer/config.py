"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (SQLite accepted for local runs)",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional RPC response cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class RpcSettings(BaseSettings):
    """EVM node RPC settings."""

    model_config = SettingsConfigDict(env_prefix="EVM_", extra="ignore")

    rpc_url: str = Field(
        default="http://localhost:8545",
        alias="EVM_RPC_URL",
        description="Primary EVM JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="EVM_FALLBACK_RPC_URL",
        description="Fallback EVM JSON-RPC endpoint",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="EVM_RPC_MAX_RPS",
        gt=0,
        le=10_000,
        description="Client-side rate limit for RPC calls",
    )
    poa: bool = Field(
        default=False,
        alias="EVM_RPC_POA",
        description="Inject the proof-of-authority extraData middleware",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class IngestSettings(BaseSettings):
    """Block ingestion settings."""

    model_config = SettingsConfigDict(env_prefix="INGEST_", extra="ignore")

    start_block: int = Field(
        default=0,
        alias="INGEST_START_BLOCK",
        ge=0,
        description="First height to ingest when the database is empty",
    )
    confirmations: int = Field(
        default=0,
        alias="INGEST_CONFIRMATIONS",
        ge=0,
        le=1_000,
        description="Blocks to stay behind the chain head while following",
    )
    workers: int = Field(
        default=8,
        alias="INGEST_WORKERS",
        ge=1,
        le=256,
        description="Concurrent interning tasks per block",
    )
    max_commit_attempts: int = Field(
        default=5,
        alias="INGEST_MAX_COMMIT_ATTEMPTS",
        ge=1,
        le=100,
        description="Attempts to commit a block before surfacing it to the operator",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="INGEST_RETRY_DELAY_SECONDS",
        ge=0,
        le=300,
        description="Initial backoff delay between commit attempts",
    )
    max_reorg_depth: int = Field(
        default=64,
        alias="INGEST_MAX_REORG_DEPTH",
        ge=1,
        le=10_000,
        description="Deepest fork the follower will walk back through",
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        alias="INGEST_POLL_INTERVAL_SECONDS",
        gt=0,
        le=3600,
        description="Delay between head polls while following the chain",
    )
    fetch_token_metadata: bool = Field(
        default=True,
        alias="INGEST_FETCH_TOKEN_METADATA",
        description="Read ERC20 name/symbol/decimals/supply for newly seen tokens",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from evm_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.ingest.workers)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rpc: RpcSettings = Field(
        default_factory=lambda: RpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingest: IngestSettings = Field(
        default_factory=lambda: IngestSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "rpc": {
                "rpc_url": self._redact_url(self.rpc.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.rpc.fallback_rpc_url)
                    if self.rpc.fallback_rpc_url
                    else "(not set)"
                ),
                "max_requests_per_second": str(self.rpc.max_requests_per_second),
            },
            "ingest": {
                "start_block": str(self.ingest.start_block),
                "confirmations": str(self.ingest.confirmations),
                "workers": str(self.ingest.workers),
                "max_commit_attempts": str(self.ingest.max_commit_attempts),
                "max_reorg_depth": str(self.ingest.max_reorg_depth),
                "fetch_token_metadata": str(self.ingest.fetch_token_metadata),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()

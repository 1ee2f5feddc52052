"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
token transfer indexer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

USDC_MAINNET_ADDRESS = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or aiosqlite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (used for the cross-process cycle lock)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; unset disables the distributed cycle lock",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Chain RPC and token contract settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    rpc_url: str = Field(
        default="http://localhost:8545",
        alias="ETH_RPC_URL",
        description="JSON-RPC endpoint of the chain node",
    )
    token_contract: str = Field(
        default=USDC_MAINNET_ADDRESS,
        alias="TOKEN_CONTRACT",
        description="Address of the ERC20 contract whose Transfer events are indexed",
    )
    token_decimals: int = Field(
        default=6,
        alias="TOKEN_DECIMALS",
        ge=0,
        le=36,
        description="Token decimals, used when formatting amounts for readers",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=10_000,
        description="Client-side RPC rate limit",
    )
    poa: bool = Field(
        default=False,
        alias="CHAIN_POA",
        description="Inject the proof-of-authority extraData middleware",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("token_contract")
    @classmethod
    def validate_token_contract(cls, v: str) -> str:
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError("TOKEN_CONTRACT must be a 0x-prefixed 20-byte address")
        try:
            int(v[2:], 16)
        except ValueError as e:
            raise ValueError("TOKEN_CONTRACT must be hex encoded") from e
        return v


class IndexerSettings(BaseSettings):
    """Indexing engine settings (scan window, retention and retry budget)."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    chunk_size_blocks: int = Field(
        default=5,
        alias="INDEXER_CHUNK_SIZE_BLOCKS",
        ge=1,
        le=100_000,
        description="Blocks per eth_getLogs window",
    )
    max_records: int = Field(
        default=1000,
        alias="INDEXER_MAX_RECORDS",
        ge=1,
        le=100_000_000,
        description="Retention cap, also used as the per-cycle fetch quota",
    )
    confirmations: int = Field(
        default=12,
        alias="INDEXER_CONFIRMATIONS",
        ge=0,
        le=10_000,
        description="Blocks below head treated as final",
    )
    retry_max_attempts: int = Field(
        default=6,
        alias="INDEXER_RETRY_MAX_ATTEMPTS",
        ge=1,
        le=50,
        description="Total attempts per RPC call (first call included)",
    )
    retry_initial_delay_seconds: float = Field(
        default=1.0,
        alias="INDEXER_RETRY_INITIAL_DELAY_SECONDS",
        ge=0.0,
        le=600.0,
        description="Base backoff delay; doubled per attempt",
    )
    retry_jitter_seconds: float = Field(
        default=0.3,
        alias="INDEXER_RETRY_JITTER_SECONDS",
        ge=0.0,
        le=60.0,
        description="Upper bound of the uniform random jitter added to each backoff",
    )
    chunk_pacing_seconds: float = Field(
        default=0.3,
        alias="INDEXER_CHUNK_PACING_SECONDS",
        ge=0.0,
        le=60.0,
        description="Fixed delay between consecutive chunk fetches",
    )
    cycle_interval_seconds: float = Field(
        default=60.0,
        alias="INDEXER_CYCLE_INTERVAL_SECONDS",
        gt=0.0,
        le=24 * 3600,
        description="Delay between indexing cycles in `run` mode",
    )
    cycle_lock_ttl_seconds: int = Field(
        default=600,
        alias="INDEXER_CYCLE_LOCK_TTL_SECONDS",
        ge=1,
        le=24 * 3600,
        description="Expiry of the Redis cycle lock; reset after the reorg check and before every chunk",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from token_transfer_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.indexer.max_records)
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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
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
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "token_contract": self.chain.token_contract,
                "token_decimals": str(self.chain.token_decimals),
                "max_requests_per_second": str(self.chain.max_requests_per_second),
            },
            "indexer": {
                "chunk_size_blocks": str(self.indexer.chunk_size_blocks),
                "max_records": str(self.indexer.max_records),
                "confirmations": str(self.indexer.confirmations),
                "retry_max_attempts": str(self.indexer.retry_max_attempts),
                "cycle_interval_seconds": str(self.indexer.cycle_interval_seconds),
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

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

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

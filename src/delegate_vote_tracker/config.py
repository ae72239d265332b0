"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Delegate Vote Tracker, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

ALCHEMY_MAINNET_URL = "https://eth-mainnet.g.alchemy.com/v2/"

Command = Literal[
    "update",
    "step",
    "sync-events",
    "sync-registry",
    "fetch-weights",
    "reconcile",
    "read-only",
]


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class EthereumSettings(BaseSettings):
    """Ethereum RPC and tracked-token settings."""

    model_config = SettingsConfigDict(env_prefix="ETH_", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="ETH_RPC_URL",
        description="Ethereum mainnet JSON-RPC endpoint",
    )
    alchemy_api_key: SecretStr | None = Field(
        default=None,
        alias="ALCHEMY_API_KEY",
        description="Alchemy key, used to build the RPC URL when ETH_RPC_URL is unset",
    )
    token_address: str = Field(
        default="0x0b010000b7624eb9b3dfbc279673c76e9d29d5f7",
        alias="ETH_TOKEN_ADDRESS",
        description="Governance token contract emitting the delegation events",
    )
    deploy_block: int = Field(
        default=15_570_746,
        alias="ETH_DEPLOY_BLOCK",
        ge=0,
        description="Block the token was deployed at (first block to ingest)",
    )
    token_decimals: int = Field(
        default=18,
        alias="ETH_TOKEN_DECIMALS",
        ge=0,
        le=36,
        description="Token decimal places",
    )
    blocks_per_query: int = Field(
        default=500,
        alias="ETH_BLOCKS_PER_QUERY",
        ge=1,
        le=10_000,
        description="Block window per eth_getLogs call (provider hard limit)",
    )
    max_requests_per_second: int = Field(
        default=10,
        alias="ETH_MAX_REQUESTS_PER_SECOND",
        ge=1,
        le=28,
        description="Provider calls allowed per rolling one-second window",
    )
    max_retries: int = Field(
        default=3,
        alias="ETH_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per provider call before giving up",
    )
    retry_delay_seconds: float = Field(
        default=2.0,
        alias="ETH_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff delay (doubles per attempt)",
    )
    request_timeout_seconds: int = Field(
        default=30,
        alias="ETH_REQUEST_TIMEOUT_SECONDS",
        ge=1,
        le=300,
        description="HTTP timeout for RPC requests",
    )
    sync_max_duration_seconds: float | None = Field(
        default=None,
        alias="ETH_SYNC_MAX_DURATION_SECONDS",
        ge=1.0,
        description="Optional wall-clock ceiling for a chunked event sync",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("ETH_RPC_URL must be an HTTP(S) endpoint")
        return v

    @field_validator("token_address")
    @classmethod
    def validate_token_address(cls, v: str) -> str:
        if not (v.startswith("0x") and len(v) == 42):
            raise ValueError("ETH_TOKEN_ADDRESS must be a 0x-prefixed 20-byte address")
        return v.lower()

    @property
    def endpoint(self) -> str | None:
        """Resolved RPC endpoint, preferring an explicit URL over the Alchemy key."""
        if self.rpc_url:
            return self.rpc_url
        if self.alchemy_api_key:
            return ALCHEMY_MAINNET_URL + self.alchemy_api_key.get_secret_value()
        return None


class RegistrySettings(BaseSettings):
    """Tally delegate-registry API settings."""

    model_config = SettingsConfigDict(env_prefix="TALLY_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="TALLY_API_KEY",
        description="Tally API key",
    )
    api_url: str = Field(
        default="https://api.tally.xyz/query",
        alias="TALLY_API_URL",
        description="Tally GraphQL endpoint",
    )
    organization_id: str = Field(
        default="2413388957975839812",
        alias="TALLY_ORGANIZATION_ID",
        description="Tally organization whose delegates are synced",
    )
    page_size: int = Field(
        default=20,
        alias="TALLY_PAGE_SIZE",
        ge=1,
        le=100,
        description="Delegates requested per GraphQL page",
    )
    max_duration_seconds: float = Field(
        default=300.0,
        alias="TALLY_MAX_DURATION_SECONDS",
        ge=1.0,
        le=3600.0,
        description="Wall-clock ceiling for one registry fetch (partial results after)",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="TALLY_REQUEST_TIMEOUT_SECONDS",
        ge=1.0,
        le=300.0,
        description="HTTP timeout per GraphQL request",
    )
    cache_ttl_seconds: float = Field(
        default=300.0,
        alias="TALLY_CACHE_TTL_SECONDS",
        ge=0.0,
        le=86_400.0,
        description="TTL for the in-process delegate list cache",
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("TALLY_API_URL must be an HTTP(S) endpoint")
        return v


class WeightSettings(BaseSettings):
    """Vote-weight calculation and reconciliation settings."""

    model_config = SettingsConfigDict(env_prefix="WEIGHTS_", extra="ignore")

    batch_size: int = Field(
        default=5,
        alias="WEIGHTS_BATCH_SIZE",
        ge=3,
        le=5,
        description="Concurrent getVotes calls per batch",
    )
    batch_pause_seconds: float = Field(
        default=1.0,
        alias="WEIGHTS_BATCH_PAUSE_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause between getVotes batches",
    )
    mismatch_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        alias="WEIGHTS_MISMATCH_TOLERANCE",
        description="Max |weight - eventCalcWeight| still considered matching",
    )
    significant_power_percent: Decimal = Field(
        default=Decimal("1"),
        alias="WEIGHTS_SIGNIFICANT_POWER_PERCENT",
        description="Share of total power (percent) counted as significant in metrics",
    )

    @field_validator("mismatch_tolerance", "significant_power_percent")
    @classmethod
    def validate_non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("weight thresholds must be >= 0")
        return v


class UpdateSettings(BaseSettings):
    """Update orchestrator timing settings."""

    model_config = SettingsConfigDict(env_prefix="UPDATE_", extra="ignore")

    lock_timeout_seconds: int = Field(
        default=600,
        alias="UPDATE_LOCK_TIMEOUT_SECONDS",
        ge=10,
        le=86_400,
        description="Lock expiry; a lock older than this is considered free",
    )
    freshness_seconds: int = Field(
        default=3600,
        alias="UPDATE_FRESHNESS_SECONDS",
        ge=60,
        le=7 * 86_400,
        description="Metrics older than this trigger an update",
    )
    cooldown_seconds: int = Field(
        default=300,
        alias="UPDATE_COOLDOWN_SECONDS",
        ge=0,
        le=86_400,
        description="Suppress re-triggering this long after an update attempt",
    )
    step_pause_seconds: float = Field(
        default=1.0,
        alias="UPDATE_STEP_PAUSE_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause inserted between pipeline steps",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from delegate_vote_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.ethereum.blocks_per_query)
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
    ethereum: EthereumSettings = Field(
        default_factory=lambda: EthereumSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    registry: RegistrySettings = Field(
        default_factory=lambda: RegistrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    weights: WeightSettings = Field(
        default_factory=lambda: WeightSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    update: UpdateSettings = Field(
        default_factory=lambda: UpdateSettings(
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
        endpoint = self.ethereum.endpoint
        if endpoint and self.ethereum.alchemy_api_key and not self.ethereum.rpc_url:
            endpoint = ALCHEMY_MAINNET_URL + "***"
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "ethereum": {
                "rpc_url": endpoint or "(not set)",
                "token_address": self.ethereum.token_address,
                "deploy_block": str(self.ethereum.deploy_block),
                "blocks_per_query": str(self.ethereum.blocks_per_query),
                "max_requests_per_second": str(self.ethereum.max_requests_per_second),
            },
            "registry": {
                "api_url": self.registry.api_url,
                "organization_id": self.registry.organization_id,
                "api_key": "(set)" if self.registry.api_key else "(not set)",
            },
            "weights": {
                "batch_size": str(self.weights.batch_size),
                "mismatch_tolerance": str(self.weights.mismatch_tolerance),
            },
            "update": {
                "lock_timeout_seconds": str(self.update.lock_timeout_seconds),
                "freshness_seconds": str(self.update.freshness_seconds),
                "cooldown_seconds": str(self.update.cooldown_seconds),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Command) -> None:
        """Validate command-specific requirements.

        A command that needs a collaborator which is not configured must
        refuse to start rather than fail halfway through a run.
        """
        needs_rpc = command in ("update", "step", "sync-events", "fetch-weights", "reconcile")
        needs_registry = command in ("update", "step", "sync-registry")

        if needs_rpc and not self.ethereum.endpoint:
            raise ValueError("ETH_RPC_URL or ALCHEMY_API_KEY is required for on-chain reads")
        if needs_registry and not self.registry.api_key:
            raise ValueError("TALLY_API_KEY is required to sync the delegate registry")

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

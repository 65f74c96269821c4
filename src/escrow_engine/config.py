"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
escrow engine, loading and validating environment variables at startup.
Secrets (master key, provider token, bot token) are held as ``SecretStr``
and never appear in logs or in ``redacted_summary()``.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from escrow_engine.assets import ASSET_PARAMS, Asset, parse_asset

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

# Default per-asset fee schedules, in coin units.
DEFAULT_FEE_ASSET_OVERRIDES: dict[str, dict[str, Decimal]] = {
    Asset.BTC.value: {"flat_amount": Decimal("0.0001"), "flat_threshold": Decimal("0.1"), "percentage": Decimal("5")},
    Asset.LTC.value: {"flat_amount": Decimal("0.01"), "flat_threshold": Decimal("10"), "percentage": Decimal("5")},
}


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    transaction_attempts: int = Field(
        default=3,
        alias="DATABASE_TRANSACTION_ATTEMPTS",
        ge=1,
        le=10,
        description="Attempts for bookkeeping transactions that hit a lock timeout or deadlock",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings.

    Redis is optional: without it the chain gateway runs uncached and the
    scheduler assumes it is the only running instance.
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string",
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

    @property
    def enabled(self) -> bool:
        return self.url is not None


class CustodySettings(BaseSettings):
    """Escrow key custody settings."""

    model_config = SettingsConfigDict(env_prefix="CUSTODY_", extra="ignore")

    master_key: SecretStr = Field(
        alias="CUSTODY_MASTER_KEY",
        description="AES-256 master key for escrow private keys (64 hex characters)",
    )
    previous_master_keys: SecretStr | None = Field(
        default=None,
        alias="CUSTODY_PREVIOUS_MASTER_KEYS",
        description="Comma-separated retired master keys, used only to decrypt older blobs",
    )

    @field_validator("master_key")
    @classmethod
    def validate_master_key(cls, v: SecretStr) -> SecretStr:
        if not _HEX_KEY_RE.match(v.get_secret_value()):
            raise ValueError("CUSTODY_MASTER_KEY must be 32 bytes encoded as 64 hex characters")
        return v

    @field_validator("previous_master_keys")
    @classmethod
    def validate_previous_master_keys(cls, v: SecretStr | None) -> SecretStr | None:
        if v is None:
            return v
        for key in v.get_secret_value().split(","):
            if key.strip() and not _HEX_KEY_RE.match(key.strip()):
                raise ValueError("CUSTODY_PREVIOUS_MASTER_KEYS entries must be 64 hex characters")
        return v

    def master_key_bytes(self) -> bytes:
        return bytes.fromhex(self.master_key.get_secret_value())

    def previous_master_key_bytes(self) -> list[bytes]:
        if self.previous_master_keys is None:
            return []
        return [
            bytes.fromhex(key.strip())
            for key in self.previous_master_keys.get_secret_value().split(",")
            if key.strip()
        ]


class ChainSettings(BaseSettings):
    """Blockchain data provider settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    provider_url: str = Field(
        default="https://api.blockcypher.com/v1",
        alias="CHAIN_PROVIDER_URL",
        description="BlockCypher-compatible API base URL",
    )
    network: str = Field(
        default="main",
        alias="CHAIN_NETWORK",
        description="Provider network segment (main or test3)",
    )
    api_token: SecretStr | None = Field(
        default=None,
        alias="CHAIN_API_TOKEN",
        description="Provider API token",
    )
    request_timeout_seconds: float = Field(
        default=15.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        ge=1.0,
        le=120.0,
        description="Timeout applied to balance/UTXO/confirmation reads",
    )
    broadcast_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_BROADCAST_TIMEOUT_SECONDS",
        ge=1.0,
        le=300.0,
        description="Timeout applied to transaction broadcasts",
    )
    max_requests_per_second: float = Field(
        default=3.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=100.0,
        description="Client-side rate limit for provider calls",
    )
    max_retries: int = Field(
        default=3,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=10,
        description="Retry attempts for read calls (broadcasts are never retried)",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="CHAIN_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial delay between read retries",
    )
    balance_cache_ttl_seconds: int = Field(
        default=15,
        alias="CHAIN_BALANCE_CACHE_TTL_SECONDS",
        ge=0,
        le=3600,
        description="Redis TTL for cached balance lookups (0 disables)",
    )

    @field_validator("provider_url")
    @classmethod
    def validate_provider_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("CHAIN_PROVIDER_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class DealSettings(BaseSettings):
    """Deal lifecycle policy."""

    model_config = SettingsConfigDict(env_prefix="DEAL_", extra="ignore")

    timeout_minutes: int = Field(
        default=60,
        alias="DEAL_TIMEOUT_MINUTES",
        ge=5,
        le=7 * 24 * 60,
        description="Payment window after the escrow address is assigned",
    )
    extension_minutes: int = Field(
        default=30,
        alias="DEAL_EXTENSION_MINUTES",
        ge=1,
        le=24 * 60,
        description="Default extension granted by extend_deal",
    )
    max_extension_minutes: int = Field(
        default=24 * 60,
        alias="DEAL_MAX_EXTENSION_MINUTES",
        ge=1,
        le=7 * 24 * 60,
        description="Largest single extension accepted",
    )
    max_amount: Decimal = Field(
        default=Decimal("100"),
        alias="DEAL_MAX_AMOUNT",
        description="Largest deal amount accepted (in asset units)",
    )
    required_confirmations: dict[str, int] = Field(
        default_factory=dict,
        alias="DEAL_REQUIRED_CONFIRMATIONS",
        description='Per-asset confirmation overrides as JSON, e.g. {"BTC": 2}',
    )

    @field_validator("max_amount")
    @classmethod
    def validate_max_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("DEAL_MAX_AMOUNT must be > 0")
        return v

    @field_validator("required_confirmations")
    @classmethod
    def validate_required_confirmations(cls, v: dict[str, int]) -> dict[str, int]:
        normalized: dict[str, int] = {}
        for asset, count in v.items():
            if count < 1:
                raise ValueError("DEAL_REQUIRED_CONFIRMATIONS values must be >= 1")
            normalized[parse_asset(asset).value] = count
        return normalized

    def confirmations_for(self, asset: Asset) -> int:
        return self.required_confirmations.get(asset.value, ASSET_PARAMS[asset].required_confirmations)


class FeeSettings(BaseSettings):
    """Platform fee schedule.

    ``asset_overrides`` expresses the schedule in each asset's own units and
    ships with defaults for BTC and LTC. Keys an operator supplies, e.g.
    ``{"BTC": {"flat_threshold": "0.002"}}``, are merged over those defaults.
    """

    model_config = SettingsConfigDict(env_prefix="FEE_", extra="ignore")

    flat_amount: Decimal = Field(
        default=Decimal("5"),
        alias="FEE_FLAT_AMOUNT",
        description="Flat fee charged below the threshold",
    )
    flat_threshold: Decimal = Field(
        default=Decimal("100"),
        alias="FEE_FLAT_THRESHOLD",
        description="Amounts below this pay the flat fee",
    )
    percentage: Decimal = Field(
        default=Decimal("5"),
        alias="FEE_PERCENTAGE",
        description="Percentage fee charged at or above the threshold",
    )
    asset_overrides: dict[str, dict[str, Decimal]] = Field(
        default_factory=lambda: {asset: dict(values) for asset, values in DEFAULT_FEE_ASSET_OVERRIDES.items()},
        alias="FEE_ASSET_OVERRIDES",
        description="Per-asset overrides of flat_amount/flat_threshold/percentage as JSON",
    )

    @field_validator("percentage")
    @classmethod
    def validate_percentage(cls, v: Decimal) -> Decimal:
        if v < 0 or v >= 100:
            raise ValueError("FEE_PERCENTAGE must be in [0, 100)")
        return v

    @field_validator("asset_overrides")
    @classmethod
    def validate_asset_overrides(cls, v: dict[str, dict[str, Decimal]]) -> dict[str, dict[str, Decimal]]:
        allowed = {"flat_amount", "flat_threshold", "percentage"}
        normalized = {asset: dict(values) for asset, values in DEFAULT_FEE_ASSET_OVERRIDES.items()}
        for asset, override in v.items():
            unknown = set(override) - allowed
            if unknown:
                raise ValueError(f"Unknown fee override keys: {sorted(unknown)}")
            key = parse_asset(asset).value
            normalized[key] = {**normalized.get(key, {}), **override}
        return normalized


class SchedulerSettings(BaseSettings):
    """Reconciliation scheduler settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="SCHEDULER_ENABLED",
        description="Run the reconciliation loops in this process",
    )
    payment_check_interval_seconds: int = Field(
        default=120,
        alias="SCHEDULER_PAYMENT_CHECK_INTERVAL_SECONDS",
        ge=5,
        le=3600,
        description="How often WAITING_PAYMENT deals are checked for funding",
    )
    expiry_interval_seconds: int = Field(
        default=300,
        alias="SCHEDULER_EXPIRY_INTERVAL_SECONDS",
        ge=5,
        le=3600,
        description="How often overdue deals are expired",
    )
    reminder_interval_seconds: int = Field(
        default=3600,
        alias="SCHEDULER_REMINDER_INTERVAL_SECONDS",
        ge=60,
        le=24 * 3600,
        description="How often expiry reminders are sent",
    )
    reminder_window_minutes: int = Field(
        default=30,
        alias="SCHEDULER_REMINDER_WINDOW_MINUTES",
        ge=1,
        le=24 * 60,
        description="Deals expiring within this window get a reminder",
    )
    confirmation_refresh_interval_seconds: int = Field(
        default=300,
        alias="SCHEDULER_CONFIRMATION_REFRESH_INTERVAL_SECONDS",
        ge=30,
        le=24 * 3600,
        description="How often broadcast payouts are re-checked for confirmations",
    )
    stats_interval_seconds: int = Field(
        default=3600,
        alias="SCHEDULER_STATS_INTERVAL_SECONDS",
        ge=60,
        le=24 * 3600,
        description="How often the previous day's statistics are rolled up",
    )
    cleanup_interval_seconds: int = Field(
        default=7 * 24 * 3600,
        alias="SCHEDULER_CLEANUP_INTERVAL_SECONDS",
        ge=3600,
        le=30 * 24 * 3600,
        description="How often audit and statistics history is pruned",
    )
    audit_retention_days: int = Field(
        default=30,
        alias="SCHEDULER_AUDIT_RETENTION_DAYS",
        ge=1,
        le=3650,
        description="Audit entries older than this are pruned",
    )
    stats_retention_days: int = Field(
        default=90,
        alias="SCHEDULER_STATS_RETENTION_DAYS",
        ge=1,
        le=3650,
        description="Daily statistics older than this are pruned",
    )
    max_concurrency: int = Field(
        default=4,
        alias="SCHEDULER_MAX_CONCURRENCY",
        ge=1,
        le=64,
        description="Deals processed concurrently within one sweep",
    )
    per_deal_delay_seconds: float = Field(
        default=0.5,
        alias="SCHEDULER_PER_DEAL_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause after each per-deal provider call",
    )
    leader_lock_ttl_seconds: int = Field(
        default=120,
        alias="SCHEDULER_LEADER_LOCK_TTL_SECONDS",
        ge=5,
        le=3600,
        description="TTL of the Redis lock that keeps sweeps single-instance",
    )


class AdminSettings(BaseSettings):
    """Platform administrators."""

    model_config = SettingsConfigDict(env_prefix="ADMIN_", extra="ignore")

    user_ids: str = Field(
        default="",
        alias="ADMIN_USER_IDS",
        description="Comma-separated external ids with admin rights",
    )

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(part.strip() for part in self.user_ids.split(",") if part.strip())


class TelegramSettings(BaseSettings):
    """Telegram notification settings."""

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_", extra="ignore")

    bot_token: SecretStr | None = Field(
        default=None,
        alias="TELEGRAM_BOT_TOKEN",
        description="Telegram bot token",
    )
    admin_chat_id: str | None = Field(
        default=None,
        alias="TELEGRAM_ADMIN_CHAT_ID",
        description="Chat that receives dispute and failure notifications",
    )

    @property
    def enabled(self) -> bool:
        """Check if Telegram notifications are enabled."""
        return self.bot_token is not None


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from escrow_engine.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.deal.timeout_minutes)
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
    custody: CustodySettings = Field(
        default_factory=lambda: CustodySettings(
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
    deal: DealSettings = Field(
        default_factory=lambda: DealSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    fee: FeeSettings = Field(
        default_factory=lambda: FeeSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scheduler: SchedulerSettings = Field(
        default_factory=lambda: SchedulerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    admin: AdminSettings = Field(
        default_factory=lambda: AdminSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    telegram: TelegramSettings = Field(
        default_factory=lambda: TelegramSettings(
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
            "custody": {
                "master_key": "(set)",
                "previous_master_keys": str(len(self.custody.previous_master_key_bytes())),
            },
            "chain": {
                "provider_url": self.chain.provider_url,
                "network": self.chain.network,
                "api_token": "(set)" if self.chain.api_token else "(not set)",
            },
            "deal": {
                "timeout_minutes": str(self.deal.timeout_minutes),
                "max_amount": str(self.deal.max_amount),
                "required_confirmations": ", ".join(
                    f"{asset.value}={self.deal.confirmations_for(asset)}" for asset in Asset
                ),
            },
            "fee": {
                "flat_amount": str(self.fee.flat_amount),
                "flat_threshold": str(self.fee.flat_threshold),
                "percentage": str(self.fee.percentage),
                "asset_overrides": ", ".join(sorted(self.fee.asset_overrides)) or "(none)",
            },
            "scheduler_enabled": str(self.scheduler.enabled),
            "admins": str(len(self.admin.ids)),
            "telegram_enabled": str(self.telegram.enabled),
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

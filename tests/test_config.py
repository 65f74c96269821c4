"""Tests for configuration loading."""

import json
from decimal import Decimal

import pytest
from pydantic import ValidationError

from escrow_engine.assets import Asset
from escrow_engine.config import Settings, clear_settings_cache, get_settings

MASTER_KEY_HEX = "4f3c2a1b" * 8


class TestSettings:
    """Tests for Settings."""

    def test_loads_nested_sections(self, settings: Settings) -> None:
        assert settings.database.url.startswith("sqlite+aiosqlite://")
        assert settings.custody.master_key_bytes() == bytes.fromhex(MASTER_KEY_HEX)
        assert settings.admin.ids == frozenset({"admin-1"})
        assert settings.fee.asset_overrides["BTC"]["flat_amount"] == Decimal("0.0001")
        assert not settings.redis.enabled
        assert not settings.telegram.enabled
        assert settings.deal.timeout_minutes == 60

    def test_get_settings_is_cached(self, env) -> None:
        assert get_settings() is get_settings()
        clear_settings_cache()

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("CUSTODY_MASTER_KEY", "abc"),
            ("DATABASE_URL", "mysql://localhost/escrow"),
            ("REDIS_URL", "localhost:6379"),
            ("CHAIN_PROVIDER_URL", "ftp://example.com"),
            ("FEE_PERCENTAGE", "100"),
            ("FEE_ASSET_OVERRIDES", json.dumps({"BTC": {"discount": "1"}})),
            ("FEE_ASSET_OVERRIDES", json.dumps({"DOGE": {"percentage": "1"}})),
            ("DEAL_REQUIRED_CONFIRMATIONS", json.dumps({"BTC": 0})),
            ("DEAL_MAX_AMOUNT", "0"),
            ("CUSTODY_PREVIOUS_MASTER_KEYS", "nothex"),
        ],
    )
    def test_invalid_values(self, env, monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
        monkeypatch.setenv(name, value)

        with pytest.raises(ValidationError):
            Settings()

    def test_missing_master_key(self, env, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CUSTODY_MASTER_KEY")

        with pytest.raises(ValidationError):
            Settings()

    def test_previous_master_keys(self, env, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CUSTODY_PREVIOUS_MASTER_KEYS", f"{'a5' * 32}, ,{'b6' * 32}")

        keys = Settings().custody.previous_master_key_bytes()

        assert keys == [bytes.fromhex("a5" * 32), bytes.fromhex("b6" * 32)]

    def test_confirmation_overrides(self, env, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEAL_REQUIRED_CONFIRMATIONS", json.dumps({"ltc": 3}))

        deal = Settings().deal

        assert deal.confirmations_for(Asset.LTC) == 3
        assert deal.confirmations_for(Asset.BTC) == 1


class TestRedaction:
    """Secrets never appear in the printable summary."""

    def test_summary_hides_secrets(self, env, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://escrow:hunter2@db:5432/escrow")
        monkeypatch.setenv("REDIS_URL", "redis://:redispass@cache:6379/0")
        monkeypatch.setenv("CHAIN_API_TOKEN", "chain-token-123")
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:bot-secret")

        summary = Settings().redacted_summary()
        dumped = json.dumps(summary)

        assert summary["database_url"] == "postgresql+asyncpg://escrow:***@db:5432/escrow"
        assert summary["chain"]["api_token"] == "(set)"
        assert summary["telegram_enabled"] == "True"
        for secret in ("hunter2", "redispass", "chain-token-123", "bot-secret", MASTER_KEY_HEX):
            assert secret not in dumped

    def test_url_without_password(self) -> None:
        assert Settings._redact_url("sqlite+aiosqlite:///escrow.db") == "sqlite+aiosqlite:///escrow.db"

    def test_secret_repr(self, settings: Settings) -> None:
        assert MASTER_KEY_HEX not in repr(settings.custody)

"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from escrow_engine.assets import Asset
from escrow_engine.chain.gateway import (
    AddressBalance,
    BroadcastResult,
    ProviderUnavailableError,
    Utxo,
)
from escrow_engine.config import Settings, clear_settings_cache
from escrow_engine.custody.addresses import double_sha256, hash160, p2pkh_address
from escrow_engine.custody.keys import KeyCustodyService
from escrow_engine.engine.admin import AdminService
from escrow_engine.engine.lifecycle import DealLifecycleEngine
from escrow_engine.engine.queries import DealQueries
from escrow_engine.storage.database import DatabaseManager

MASTER_KEY_HEX = "4f3c2a1b" * 8
ADMIN_REF = "admin-1"

_ENV_VARS_TO_CLEAR = (
    "REDIS_URL",
    "CUSTODY_PREVIOUS_MASTER_KEYS",
    "CHAIN_API_TOKEN",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_ADMIN_CHAT_ID",
    "DEAL_REQUIRED_CONFIRMATIONS",
    "LOG_LEVEL",
    "FEE_FLAT_AMOUNT",
    "FEE_FLAT_THRESHOLD",
    "FEE_PERCENTAGE",
    "FEE_ASSET_OVERRIDES",
)


def make_address(seed: str, asset: Asset = Asset.BTC) -> str:
    """Deterministic valid P2PKH address for ``seed``."""
    return p2pkh_address(hash160(seed.encode()), asset)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeChainGateway:
    """In-memory chain: funded addresses, broadcasts and confirmation counts."""

    def __init__(self) -> None:
        self.utxos: dict[str, list[Utxo]] = {}
        self.confirmations: dict[str, int] = {}
        self.broadcasts: list[str] = []
        self.broadcast_failures: list[Exception | None] = []
        self.broadcast_delay = 0.0
        self.fail_reads = False
        self.read_calls = 0
        self.fresh_balance_reads = 0

    def fund(self, address: str, value_sats: int, *, confirmations: int = 1, seed: str | None = None) -> Utxo:
        seed = seed or f"{address}:{len(self.utxos.get(address, []))}"
        utxo = Utxo(
            txid=hashlib.sha256(seed.encode()).hexdigest(),
            vout=0,
            value_sats=value_sats,
            confirmations=confirmations,
        )
        self.utxos.setdefault(address, []).append(utxo)
        return utxo

    def confirm_all(self, address: str, confirmations: int = 1) -> None:
        self.utxos[address] = [
            Utxo(u.txid, u.vout, u.value_sats, max(u.confirmations, confirmations)) for u in self.utxos[address]
        ]

    def _read(self) -> None:
        self.read_calls += 1
        if self.fail_reads:
            raise ProviderUnavailableError("provider down")

    async def get_balance(self, address: str, asset: Asset, *, fresh: bool = False) -> AddressBalance:
        self._read()
        if fresh:
            self.fresh_balance_reads += 1
        utxos = self.utxos.get(address, [])
        return AddressBalance(
            confirmed_sats=sum(u.value_sats for u in utxos if u.confirmations > 0),
            unconfirmed_sats=sum(u.value_sats for u in utxos if u.confirmations == 0),
        )

    async def get_utxos(self, address: str, asset: Asset) -> list[Utxo]:
        self._read()
        return list(self.utxos.get(address, []))

    async def broadcast(self, raw_tx_hex: str, asset: Asset) -> BroadcastResult:
        if self.broadcast_delay:
            await asyncio.sleep(self.broadcast_delay)
        if self.broadcast_failures:
            failure = self.broadcast_failures.pop(0)
            if failure is not None:
                raise failure
        self.broadcasts.append(raw_tx_hex)
        return BroadcastResult(tx_hash=double_sha256(bytes.fromhex(raw_tx_hex))[::-1].hex())

    async def get_confirmations(self, tx_hash: str, asset: Asset) -> int:
        self._read()
        return self.confirmations.get(tx_hash, 0)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events = []

    async def publish(self, events) -> None:
        self.events.extend(events)

    def kinds(self) -> list:
        return [event.kind for event in self.events]


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Environment for a self-contained engine on a temporary SQLite file."""
    for name in _ENV_VARS_TO_CLEAR:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    monkeypatch.setenv("CUSTODY_MASTER_KEY", MASTER_KEY_HEX)
    monkeypatch.setenv("ADMIN_USER_IDS", ADMIN_REF)
    monkeypatch.setenv("SCHEDULER_PER_DEAL_DELAY_SECONDS", "0")
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings(env) -> Settings:
    return Settings()


@pytest.fixture
async def db(settings: Settings):
    manager = DatabaseManager(settings.database.url)
    await manager.create_schema()
    yield manager
    await manager.dispose()


@pytest.fixture
def custody() -> KeyCustodyService:
    return KeyCustodyService(bytes.fromhex(MASTER_KEY_HEX))


@pytest.fixture
def gateway() -> FakeChainGateway:
    return FakeChainGateway()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(db, custody, gateway, settings, publisher, clock) -> DealLifecycleEngine:
    return DealLifecycleEngine(db, custody, gateway, settings=settings, publisher=publisher, clock=clock)


@pytest.fixture
def admin(db, settings, publisher, clock) -> AdminService:
    return AdminService(db, settings, publisher=publisher, clock=clock)


@pytest.fixture
def queries(db, gateway) -> DealQueries:
    return DealQueries(db, gateway)


@pytest.fixture
def address_for() -> Callable[..., str]:
    return make_address

"""Tests for the database engine and transaction scopes."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError

from escrow_engine.config import DatabaseSettings
from escrow_engine.storage.database import (
    DatabaseManager,
    async_driver_url,
    is_transient_error,
)
from escrow_engine.storage.models import UserModel


class _PgError(Exception):
    def __init__(self, sqlstate: str) -> None:
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


def user(external_id: str, code: str | None = None) -> UserModel:
    return UserModel(external_id=external_id, referral_code=code or external_id.upper())


def locked() -> OperationalError:
    return OperationalError("UPDATE deals", {}, Exception("database is locked"))


@pytest.fixture
async def manager(tmp_path):
    db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'tx.db'}", retry_delay_seconds=0)
    await db.create_schema()
    yield db
    await db.dispose()


async def count_users(db: DatabaseManager) -> int:
    async with db.get_async_session() as session:
        return await session.scalar(select(func.count()).select_from(UserModel))


class TestHelpers:
    def test_plain_postgres_url_gets_async_driver(self) -> None:
        assert async_driver_url("postgresql://u:p@db/escrow") == "postgresql+asyncpg://u:p@db/escrow"
        assert async_driver_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"

    @pytest.mark.parametrize(
        ("orig", "transient"),
        [
            (Exception("database is locked"), True),
            (_PgError("40001"), True),
            (_PgError("40P01"), True),
            (_PgError("23505"), False),
            (Exception("no such table: deals"), False),
        ],
    )
    def test_transient_classification(self, orig: Exception, transient: bool) -> None:
        assert is_transient_error(OperationalError("SELECT 1", {}, orig)) is transient

    def test_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            DatabaseManager("sqlite+aiosqlite://", transaction_attempts=0)

    def test_from_settings(self) -> None:
        settings = DatabaseSettings.model_validate(
            {"DATABASE_URL": "sqlite+aiosqlite:///escrow.db", "DATABASE_TRANSACTION_ATTEMPTS": 5}
        )

        db = DatabaseManager.from_settings(settings)

        assert db.database_url == "sqlite+aiosqlite:///escrow.db"
        assert db._attempts == 5


class TestSessions:
    @pytest.mark.asyncio
    async def test_sqlite_connections_wait_on_locks(self, manager: DatabaseManager) -> None:
        async with manager.get_async_session() as session:
            timeout = await session.scalar(text("PRAGMA busy_timeout"))

        assert timeout == 30_000

    @pytest.mark.asyncio
    async def test_session_commits_on_success(self, manager: DatabaseManager) -> None:
        async with manager.get_async_session() as session:
            session.add(user("buyer-1"))

        assert await count_users(manager) == 1

    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self, manager: DatabaseManager) -> None:
        with pytest.raises(RuntimeError):
            async with manager.get_async_session() as session:
                session.add(user("buyer-1"))
                await session.flush()
                raise RuntimeError("abort")

        assert await count_users(manager) == 0


class TestRunTransaction:
    @pytest.mark.asyncio
    async def test_replays_after_transient_conflict(self, manager: DatabaseManager) -> None:
        calls = []

        async def work(session) -> str:
            calls.append(1)
            session.add(user(f"user-{len(calls)}"))
            await session.flush()
            if len(calls) == 1:
                raise locked()
            return "done"

        assert await manager.run_transaction(work) == "done"
        assert len(calls) == 2
        # The first attempt was rolled back.
        assert await count_users(manager) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, manager: DatabaseManager) -> None:
        work = AsyncMock(side_effect=locked())

        with pytest.raises(OperationalError):
            await manager.run_transaction(work)

        assert work.await_count == 3

    @pytest.mark.asyncio
    async def test_does_not_replay_integrity_errors(self, manager: DatabaseManager) -> None:
        async def work(session) -> None:
            session.add_all([user("dup", "CODE-A"), user("dup", "CODE-B")])
            await session.flush()

        with pytest.raises(IntegrityError):
            await manager.run_transaction(work)

        assert await count_users(manager) == 0

    @pytest.mark.asyncio
    async def test_does_not_replay_engine_errors(self, manager: DatabaseManager) -> None:
        work = AsyncMock(side_effect=ValueError("bad input"))

        with pytest.raises(ValueError):
            await manager.run_transaction(work)

        assert work.await_count == 1

"""Database engine and transaction scopes for the escrow engine.

Deal transitions are compare-and-set updates (``UPDATE ... WHERE status = ?``
plus a rowcount check), so each statement must see the latest committed row
rather than a snapshot taken at transaction start. PostgreSQL therefore runs
at READ COMMITTED, and SQLite waits on a held write lock instead of failing
immediately.

Two scopes are offered:

- ``get_async_session()`` is one transaction that commits when the block
  exits normally and rolls back otherwise.
- ``run_transaction(work)`` runs ``work(session)`` in such a transaction and
  replays it when the database reports a transient conflict such as a lock
  timeout or deadlock. Only side-effect-free work may be replayed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrow_engine.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from escrow_engine.config import DatabaseSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SQLITE_BUSY_TIMEOUT_MS = 30_000
DEFAULT_TRANSACTION_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.05

# serialization_failure, deadlock_detected
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})
_TRANSIENT_SQLITE_MESSAGES = ("database is locked", "database table is locked")


def async_driver_url(database_url: str) -> str:
    """Map a plain ``postgresql://`` URL onto the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        logger.warning("DATABASE_URL has no async driver; using postgresql+asyncpg")
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def is_transient_error(error: DBAPIError) -> bool:
    """Whether replaying the whole transaction may succeed."""
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(fragment in message for fragment in _TRANSIENT_SQLITE_MESSAGES)


def _configure_sqlite_connection(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def build_async_engine(
    database_url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
) -> AsyncEngine:
    """Create the engine with the isolation the compare-and-set updates rely on.

    SQLite gets no pool sizing (aiosqlite keeps one thread per connection)
    and a busy timeout on every new connection.
    """
    url = async_driver_url(database_url)
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_MS / 1000},
        )
        event.listen(engine.sync_engine, "connect", _configure_sqlite_connection)
        return engine
    return create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        isolation_level="READ COMMITTED",
    )


class DatabaseManager:
    """Owns the engine and hands out transaction scopes.

    Example:
        ```python
        db = DatabaseManager.from_settings(settings.database)
        async with db.get_async_session() as session:
            deal = await DealRepository(session).get(deal_id)
        await db.dispose()
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
        transaction_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        if transaction_attempts < 1:
            raise ValueError("transaction_attempts must be at least 1")
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._attempts = transaction_attempts
        self._retry_delay = retry_delay_seconds

        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> DatabaseManager:
        return cls(
            settings.url,
            pool_size=settings.pool_size,
            transaction_attempts=settings.transaction_attempts,
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = build_async_engine(
                self.database_url,
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                echo=self._echo,
            )
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction: commit on normal exit, roll back on any exception."""
        if self._sessions is None:
            self._sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        session = self._sessions()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def run_transaction(
        self,
        work: Callable[[AsyncSession], Awaitable[T]],
        *,
        description: str = "transaction",
    ) -> T:
        """Run ``work`` in one transaction, replaying it on transient conflicts.

        Raises:
            DBAPIError: If the error is not transient or the attempts are spent.
        """
        attempt = 1
        while True:
            try:
                async with self.get_async_session() as session:
                    return await work(session)
            except DBAPIError as e:
                if attempt >= self._attempts or not is_transient_error(e):
                    raise
                logger.warning(
                    "%s hit a transient database conflict (attempt %d/%d): %s",
                    description,
                    attempt,
                    self._attempts,
                    e.orig,
                )
                await asyncio.sleep(self._retry_delay * attempt)
                attempt += 1

    async def create_schema(self) -> None:
        """Create every table; migrations are the production path."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema created")

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
        logger.info("Database connections closed")

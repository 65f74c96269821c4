"""Reconciliation scheduler.

Periodic sweeps that keep deals in step with the chain and the clock:

- payment checks for every WAITING_PAYMENT deal
- expiry of overdue deals (the engine re-checks the chain first)
- one reminder per deal close to expiry
- confirmation refresh for broadcast ledger rows
- daily statistics roll-up and retention cleanup

Sweeps only enumerate candidates, call the engine and log the outcome; the
engine owns every business rule. When Redis is configured, a short-lived
lock per sweep keeps several processes from doing the same work at once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from escrow_engine.domain import DealStatus
from escrow_engine.storage.repos import AuditRepository, DealRepository, StatsRepository, TransactionRepository

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from escrow_engine.config import SchedulerSettings
    from escrow_engine.engine.lifecycle import DealLifecycleEngine
    from escrow_engine.engine.results import OperationResult
    from escrow_engine.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

LEADER_LOCK_PREFIX = "escrow:scheduler:"
STUCK_RELEASE_AFTER = timedelta(minutes=15)


@dataclass
class SweepStats:
    """Counters for one kind of sweep."""

    runs: int = 0
    processed: int = 0
    failures: int = 0
    skipped_not_leader: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None


@dataclass
class SchedulerStats:
    sweeps: dict[str, SweepStats] = field(default_factory=dict)

    def for_sweep(self, name: str) -> SweepStats:
        return self.sweeps.setdefault(name, SweepStats())


class ReconciliationScheduler:
    """Runs the periodic sweeps as asyncio tasks.

    Example:
        ```python
        scheduler = ReconciliationScheduler(engine, db, settings.scheduler, redis=redis)
        await scheduler.start()
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        engine: DealLifecycleEngine,
        db: DatabaseManager,
        settings: SchedulerSettings,
        *,
        redis: Redis | None = None,
        clock: Callable[[], datetime] | None = None,
        instance_id: str | None = None,
    ) -> None:
        self._engine = engine
        self._db = db
        self._settings = settings
        self._redis = redis
        self._clock = clock or (lambda: datetime.now(UTC))
        self._instance_id = instance_id or f"{socket.gethostname()}:{os.getpid()}"
        self._semaphore = asyncio.Semaphore(settings.max_concurrency)
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._stats = SchedulerStats()

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def _sweeps(self) -> list[tuple[str, int, Callable[[], Awaitable[int]]]]:
        s = self._settings
        return [
            ("payments", s.payment_check_interval_seconds, self.run_payment_checks),
            ("expiry", s.expiry_interval_seconds, self.run_expiry_sweep),
            ("reminders", s.reminder_interval_seconds, self.run_reminders),
            ("confirmations", s.confirmation_refresh_interval_seconds, self.run_confirmation_refresh),
            ("stats", s.stats_interval_seconds, self.run_stats_rollup),
            ("cleanup", s.cleanup_interval_seconds, self.run_cleanup),
        ]

    async def start(self) -> None:
        if self._tasks:
            raise RuntimeError("Scheduler already running")
        self._stop_event = asyncio.Event()
        for name, interval, job in self._sweeps():
            self._tasks.append(asyncio.create_task(self._run_loop(name, interval, job), name=f"sweep-{name}"))
        logger.info("Scheduler started with %d sweeps", len(self._tasks))

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("Scheduler stopped")

    async def _run_loop(self, name: str, interval: int, job: Callable[[], Awaitable[int]]) -> None:
        if not self._stop_event:
            return

        stats = self._stats.for_sweep(name)
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break
                except TimeoutError:
                    pass

                if not await self._acquire_leadership(name, interval):
                    stats.skipped_not_leader += 1
                    continue

                processed = await job()
                stats.runs += 1
                stats.processed += processed
                stats.last_run_at = self._clock()
                if processed:
                    logger.debug("Sweep %s processed %d items", name, processed)
            except asyncio.CancelledError:
                break
            except Exception as e:
                stats.last_error = str(e)
                logger.warning("Sweep %s error: %s", name, e)

    async def _acquire_leadership(self, name: str, interval: int) -> bool:
        """Take the per-sweep lock; without Redis every process is leader."""
        if not self._redis:
            return True
        ttl_ms = min(self._settings.leader_lock_ttl_seconds, max(interval, 1)) * 1000
        try:
            acquired = await self._redis.set(f"{LEADER_LOCK_PREFIX}{name}", self._instance_id, nx=True, px=ttl_ms)
        except Exception as e:
            logger.warning("Leader lock for %s unavailable, sweeping anyway: %s", name, e)
            return True
        return bool(acquired)

    async def _for_each(
        self,
        name: str,
        ids: Sequence[int],
        operation: Callable[[int], Awaitable[OperationResult[Any]]],
    ) -> int:
        """Apply ``operation`` to every id with bounded concurrency.

        Returns:
            Number of ids whose operation succeeded.
        """
        stats = self._stats.for_sweep(name)
        delay = self._settings.per_deal_delay_seconds

        async def one(item_id: int) -> bool:
            async with self._semaphore:
                try:
                    result = await operation(item_id)
                except Exception as e:
                    logger.error("Sweep %s failed on %s: %s", name, item_id, e)
                    stats.failures += 1
                    return False
                finally:
                    if delay > 0:
                        await asyncio.sleep(delay)
            if not result.success:
                logger.info("Sweep %s: %s -> %s (%s)", name, item_id, result.error, result.message)
                stats.failures += 1
            return result.success

        outcomes = await asyncio.gather(*(one(i) for i in ids))
        return sum(1 for ok in outcomes if ok)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def run_payment_checks(self) -> int:
        async with self._db.get_async_session() as session:
            ids = await DealRepository(session).list_ids_by_status(DealStatus.WAITING_PAYMENT)
        return await self._for_each("payments", ids, self._engine.check_payment)

    async def run_expiry_sweep(self) -> int:
        now = self._clock()
        async with self._db.get_async_session() as session:
            deals = DealRepository(session)
            ids = await deals.list_overdue_ids(now)
            stuck = await deals.list_stuck_release_ids(now - STUCK_RELEASE_AFTER)
        for deal_id in stuck:
            logger.critical(
                "Deal %s has held a release claim for over %s; needs manual review", deal_id, STUCK_RELEASE_AFTER
            )

        processed = 0

        async def expire(deal_id: int) -> OperationResult[Any]:
            nonlocal processed
            result = await self._engine.expire_deal(deal_id)
            if result.success and result.data is not None and result.data.expired:
                processed += 1
            return result

        await self._for_each("expiry", ids, expire)
        return processed

    async def run_reminders(self) -> int:
        now = self._clock()
        window_end = now + timedelta(minutes=self._settings.reminder_window_minutes)
        async with self._db.get_async_session() as session:
            ids = await DealRepository(session).list_reminder_due_ids(now, window_end)
        return await self._for_each("reminders", ids, self._engine.send_expiry_reminder)

    async def run_confirmation_refresh(self) -> int:
        async with self._db.get_async_session() as session:
            ids = await TransactionRepository(session).list_unconfirmed_ids()
        return await self._for_each("confirmations", ids, self._engine.refresh_transaction_confirmations)

    async def run_stats_rollup(self, day: date | None = None) -> int:
        """Upsert statistics for ``day`` (default: yesterday, UTC)."""
        day = day or (self._clock().date() - timedelta(days=1))
        async with self._db.get_async_session() as session:
            stats = await StatsRepository(session).rollup_day(day)
        logger.info(
            "Stats for %s: %d new deals, %d released, %d new users",
            day.isoformat(),
            stats.new_deals,
            stats.released_deals,
            stats.new_users,
        )
        return 1

    async def run_cleanup(self) -> int:
        now = self._clock()
        audit_cutoff = now - timedelta(days=self._settings.audit_retention_days)
        stats_cutoff = (now - timedelta(days=self._settings.stats_retention_days)).date()
        async with self._db.get_async_session() as session:
            audit_removed = await AuditRepository(session).prune(audit_cutoff)
            stats_removed = await StatsRepository(session).prune(stats_cutoff)
        logger.info("Cleanup removed %d audit rows and %d stats rows", audit_removed, stats_removed)
        return audit_removed + stats_removed

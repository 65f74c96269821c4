"""Escrow service orchestrator.

This module provides the EscrowService class that wires the storage, custody,
chain gateway, notifier and scheduler together and manages their lifetime.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from escrow_engine.chain.blockcypher import BlockCypherGateway
from escrow_engine.config import Settings, get_settings
from escrow_engine.custody.keys import KeyCustodyService
from escrow_engine.engine.admin import AdminService
from escrow_engine.engine.lifecycle import DealLifecycleEngine
from escrow_engine.engine.queries import DealQueries
from escrow_engine.notifier.channels import LoggingChannel, TelegramChannel
from escrow_engine.notifier.dispatcher import EventDispatcher, NotificationChannel
from escrow_engine.scheduler import ReconciliationScheduler
from escrow_engine.storage.database import DatabaseManager

if TYPE_CHECKING:
    from escrow_engine.chain.gateway import ChainGateway

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    started_at: datetime | None = None
    last_error: str | None = None


class EscrowService:
    """Owns every long-lived component of the escrow engine.

    The engine, queries and admin facades are available once the service
    is running. Callers (a bot, an HTTP layer) hold on to the service and
    call through them.

    Example:
        ```python
        async with EscrowService() as service:
            result = await service.engine.create_deal(...)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        gateway: ChainGateway | None = None,
        channels: list[NotificationChannel] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. Loaded from the environment if omitted.
            gateway: Chain gateway to use instead of BlockCypher.
            channels: Notification channels to use instead of the configured ones.
        """
        self._settings = settings or get_settings()
        self._gateway_override = gateway
        self._channels_override = channels
        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()
        self._stop_event: asyncio.Event | None = None

        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._gateway: ChainGateway | None = None
        self._dispatcher: EventDispatcher | None = None
        self._engine: DealLifecycleEngine | None = None
        self._queries: DealQueries | None = None
        self._admin: AdminService | None = None
        self._scheduler: ReconciliationScheduler | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def engine(self) -> DealLifecycleEngine:
        if self._engine is None:
            raise RuntimeError("Service is not running")
        return self._engine

    @property
    def queries(self) -> DealQueries:
        if self._queries is None:
            raise RuntimeError("Service is not running")
        return self._queries

    @property
    def admin(self) -> AdminService:
        if self._admin is None:
            raise RuntimeError("Service is not running")
        return self._admin

    @property
    def scheduler(self) -> ReconciliationScheduler | None:
        return self._scheduler

    async def start(self) -> None:
        """Start the service.

        Raises:
            RuntimeError: If the service is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting escrow service...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Escrow service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start escrow service: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the scheduler and release every connection."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping escrow service...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = ServiceState.STOPPED
        logger.info("Escrow service stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings

        if settings.redis.enabled and settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager.from_settings(settings.database)

        custody = KeyCustodyService.from_settings(settings.custody)
        logger.info("Key custody ready (master key %s)", custody.key_id)

        self._gateway = self._gateway_override or BlockCypherGateway.from_settings(settings.chain, redis=self._redis)

        channels = self._channels_override if self._channels_override is not None else self._build_channels()
        self._dispatcher = EventDispatcher(channels)

        self._engine = DealLifecycleEngine(
            self._db_manager,
            custody,
            self._gateway,
            settings=settings,
            publisher=self._dispatcher,
        )
        self._queries = DealQueries(self._db_manager, self._gateway)
        self._admin = AdminService(self._db_manager, settings, publisher=self._dispatcher)

        if settings.scheduler.enabled:
            self._scheduler = ReconciliationScheduler(
                self._engine,
                self._db_manager,
                settings.scheduler,
                redis=self._redis,
            )

    def _build_channels(self) -> list[NotificationChannel]:
        """Build list of enabled notification channels."""
        channels: list[NotificationChannel] = [LoggingChannel()]
        telegram = self._settings.telegram

        if telegram.enabled and telegram.bot_token:
            channels.append(TelegramChannel(telegram.bot_token.get_secret_value(), telegram.admin_chat_id))
            logger.info("Telegram channel enabled")
        else:
            logger.info("Telegram not configured; notifications go to the log only")

        return channels

    async def _start_background_services(self) -> None:
        if self._scheduler:
            logger.debug("Starting reconciliation scheduler...")
            await self._scheduler.start()

    async def _stop_background_services(self) -> None:
        if self._scheduler:
            logger.debug("Stopping reconciliation scheduler...")
            await self._scheduler.stop()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._dispatcher:
            await self._dispatcher.aclose()
            self._dispatcher = None

        if isinstance(self._gateway, BlockCypherGateway):
            await self._gateway.aclose()
        self._gateway = None

        if self._db_manager:
            await self._db_manager.dispose()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        self._engine = None
        self._queries = None
        self._admin = None
        self._scheduler = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the service and run until interrupted.

        Example:
            ```python
            service = EscrowService()
            try:
                await service.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> EscrowService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

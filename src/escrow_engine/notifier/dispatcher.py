"""Fan-out of deal events to notification channels.

Delivery is fire-and-forget from the engine's point of view: the
dispatcher logs channel failures and never raises.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from escrow_engine.notifier.formatter import FormattedNotification, NotificationFormatter

if TYPE_CHECKING:
    from escrow_engine.engine.events import DealEvent

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_TIMEOUT_SECONDS = 10.0


class NotificationChannel(Protocol):
    name: str

    async def send(self, event: DealEvent, message: FormattedNotification) -> bool: ...


@dataclass
class DispatchStats:
    events: int = 0
    delivered: int = 0
    failed: int = 0


class EventDispatcher:
    """Formats each event once and delivers it to every channel concurrently."""

    def __init__(
        self,
        channels: Sequence[NotificationChannel],
        *,
        formatter: NotificationFormatter | None = None,
        channel_timeout_seconds: float = DEFAULT_CHANNEL_TIMEOUT_SECONDS,
    ) -> None:
        self._channels = list(channels)
        self._formatter = formatter or NotificationFormatter()
        self._timeout = channel_timeout_seconds
        self.stats = DispatchStats()

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    async def publish(self, events: Sequence[DealEvent]) -> None:
        for event in events:
            await self.dispatch(event)

    async def dispatch(self, event: DealEvent) -> dict[str, bool]:
        """Deliver one event; returns per-channel success."""
        self.stats.events += 1
        if not self._channels:
            return {}

        try:
            message = self._formatter.format(event)
        except Exception as e:
            logger.error("Could not format %s event for deal %s: %s", event.kind.value, event.deal_number, e)
            self.stats.failed += len(self._channels)
            return {channel.name: False for channel in self._channels}

        results = await asyncio.gather(
            *(asyncio.wait_for(channel.send(event, message), timeout=self._timeout) for channel in self._channels),
            return_exceptions=True,
        )

        outcome: dict[str, bool] = {}
        for channel, result in zip(self._channels, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "Channel %s failed for %s on deal %s: %s",
                    channel.name,
                    event.kind.value,
                    event.deal_number,
                    result,
                )
                ok = False
            else:
                ok = bool(result)
            outcome[channel.name] = ok
            if ok:
                self.stats.delivered += 1
            else:
                self.stats.failed += 1
        return outcome

    async def aclose(self) -> None:
        for channel in self._channels:
            close = getattr(channel, "aclose", None)
            if close is not None:
                await close()

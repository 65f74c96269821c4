"""Tests for event dispatch and notification channels."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from escrow_engine.assets import Asset
from escrow_engine.engine.events import DealEvent, DealEventKind
from escrow_engine.notifier import EventDispatcher, LoggingChannel, NotificationFormatter, TelegramChannel


def make_event(kind: DealEventKind = DealEventKind.DEAL_FUNDED, group_ref: str | None = None) -> DealEvent:
    return DealEvent(
        kind=kind,
        deal_id=1,
        deal_number="ESC-1",
        asset=Asset.BTC,
        group_ref=group_ref,
        payload={"amount": "0.01"},
    )


class StubChannel:
    def __init__(self, name: str, result=True, delay: float = 0.0) -> None:
        self.name = name
        self.result = result
        self.delay = delay
        self.sent = []

    async def send(self, event, message) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        self.sent.append((event, message))
        return self.result


# ============================================================================
# Dispatcher
# ============================================================================


class TestEventDispatcher:
    """Tests for EventDispatcher."""

    @pytest.mark.asyncio
    async def test_delivers_to_every_channel(self) -> None:
        first, second = StubChannel("a"), StubChannel("b")
        dispatcher = EventDispatcher([first, second])

        outcome = await dispatcher.dispatch(make_event())

        assert outcome == {"a": True, "b": True}
        assert first.sent[0][1] is second.sent[0][1]
        assert dispatcher.stats.delivered == 2

    @pytest.mark.asyncio
    async def test_channel_failure_is_isolated(self) -> None:
        broken = StubChannel("broken", result=RuntimeError("down"))
        rejecting = StubChannel("rejecting", result=False)
        healthy = StubChannel("healthy")
        dispatcher = EventDispatcher([broken, rejecting, healthy])

        outcome = await dispatcher.dispatch(make_event())

        assert outcome == {"broken": False, "rejecting": False, "healthy": True}
        assert dispatcher.stats.failed == 2
        assert len(healthy.sent) == 1

    @pytest.mark.asyncio
    async def test_slow_channel_times_out(self) -> None:
        slow = StubChannel("slow", delay=1.0)
        fast = StubChannel("fast")
        dispatcher = EventDispatcher([slow, fast], channel_timeout_seconds=0.05)

        outcome = await dispatcher.dispatch(make_event())

        assert outcome == {"slow": False, "fast": True}

    @pytest.mark.asyncio
    async def test_formatter_error(self) -> None:
        formatter = MagicMock()
        formatter.format.side_effect = ValueError("bad payload")
        channel = StubChannel("a")
        dispatcher = EventDispatcher([channel], formatter=formatter)

        outcome = await dispatcher.dispatch(make_event())

        assert outcome == {"a": False}
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_publish_and_no_channels(self) -> None:
        dispatcher = EventDispatcher([])

        await dispatcher.publish([make_event(), make_event(DealEventKind.DEAL_EXPIRED)])

        assert dispatcher.stats.events == 2
        assert dispatcher.stats.delivered == 0

    @pytest.mark.asyncio
    async def test_aclose_closes_channels(self) -> None:
        closable = StubChannel("closable")
        closable.aclose = AsyncMock()
        dispatcher = EventDispatcher([closable, StubChannel("plain")])

        await dispatcher.aclose()

        closable.aclose.assert_awaited_once()


# ============================================================================
# Channels
# ============================================================================


class TestLoggingChannel:
    @pytest.mark.asyncio
    async def test_admin_events_logged_as_warning(self, caplog) -> None:
        event = make_event(DealEventKind.DISPUTE_OPENED)
        message = NotificationFormatter().format(event)

        with caplog.at_level(logging.INFO, logger="escrow_engine.notifier.channels"):
            assert await LoggingChannel().send(event, message)

        assert caplog.records[-1].levelno == logging.WARNING
        assert "ESC-1" in caplog.records[-1].getMessage()


class TestTelegramChannel:
    """Tests for TelegramChannel."""

    def test_recipients(self) -> None:
        channel = TelegramChannel("token", admin_chat_id="-100admin")

        assert channel._recipients(make_event()) == []
        assert channel._recipients(make_event(group_ref="-100deal")) == ["-100deal"]
        assert channel._recipients(make_event(DealEventKind.LATE_PAYMENT, group_ref="-100deal")) == [
            "-100deal",
            "-100admin",
        ]
        assert channel._recipients(make_event(DealEventKind.LATE_PAYMENT, group_ref="-100admin")) == ["-100admin"]

    def test_admin_events_dropped_without_admin_chat(self) -> None:
        channel = TelegramChannel("token")

        assert channel._recipients(make_event(DealEventKind.FEE_TRANSFER_FAILED)) == []

    @pytest.fixture
    def response(self) -> MagicMock:
        response = MagicMock()
        response.status = 200
        response.text = AsyncMock(return_value="")
        return response

    @pytest.fixture
    def channel(self, response: MagicMock) -> TelegramChannel:
        """Telegram channel with a mocked HTTP session."""
        channel = TelegramChannel("123:abc", admin_chat_id="-100admin")
        session = MagicMock()
        session.closed = False
        session.post.return_value.__aenter__.return_value = response
        channel._session = session
        return channel

    @pytest.mark.asyncio
    async def test_send(self, channel: TelegramChannel) -> None:
        event = make_event(DealEventKind.DISPUTE_OPENED, group_ref="-100deal")
        message = NotificationFormatter().format(event)

        assert await channel.send(event, message)

        calls = channel._session.post.call_args_list
        assert [c.kwargs["json"]["chat_id"] for c in calls] == ["-100deal", "-100admin"]
        assert calls[0].args[0] == "https://api.telegram.org/bot123:abc/sendMessage"
        assert calls[0].kwargs["json"]["parse_mode"] == "MarkdownV2"

    @pytest.mark.asyncio
    async def test_no_recipients_skips_http(self, channel: TelegramChannel) -> None:
        event = make_event()

        assert await channel.send(event, NotificationFormatter().format(event))
        channel._session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_message(self, channel: TelegramChannel, response: MagicMock) -> None:
        response.status = 400
        event = make_event(group_ref="-100deal")

        assert not await channel.send(event, NotificationFormatter().format(event))

    @pytest.mark.asyncio
    async def test_network_error(self, channel: TelegramChannel) -> None:
        channel._session.post.side_effect = aiohttp.ClientConnectionError("reset")
        event = make_event(group_ref="-100deal")

        assert not await channel.send(event, NotificationFormatter().format(event))

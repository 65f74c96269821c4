"""Notification channels."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import aiohttp

if TYPE_CHECKING:
    from escrow_engine.engine.events import DealEvent
    from escrow_engine.notifier.formatter import FormattedNotification

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class LoggingChannel:
    """Writes every notification to the log."""

    name = "log"

    async def send(self, event: DealEvent, message: FormattedNotification) -> bool:
        log = logger.warning if event.needs_admin_attention else logger.info
        log("[%s] %s: %s", event.deal_number, message.title, message.body.replace("\n", " | "))
        return True


class TelegramChannel:
    """Sends notifications through the Telegram Bot API.

    Events go to the deal's group chat when it has one (``group_ref``);
    events needing operator attention also go to the admin chat.
    """

    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        admin_chat_id: str | None = None,
        *,
        api_url: str = TELEGRAM_API_URL,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._bot_token = bot_token
        self._admin_chat_id = admin_chat_id
        self._api_url = api_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    def _recipients(self, event: DealEvent) -> list[str]:
        chats = []
        if event.group_ref:
            chats.append(event.group_ref)
        if event.needs_admin_attention and self._admin_chat_id and self._admin_chat_id not in chats:
            chats.append(self._admin_chat_id)
        return chats

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def send(self, event: DealEvent, message: FormattedNotification) -> bool:
        chats = self._recipients(event)
        if not chats:
            return True

        session = await self._get_session()
        url = f"{self._api_url}/bot{self._bot_token}/sendMessage"
        delivered = True
        for chat_id in chats:
            payload = {
                "chat_id": chat_id,
                "text": message.telegram_markdown,
                "parse_mode": "MarkdownV2",
                "disable_web_page_preview": True,
            }
            try:
                async with session.post(url, json=payload) as response:
                    if response.status != 200:
                        body = await response.text()
                        logger.warning("Telegram rejected message for chat %s: %s %s", chat_id, response.status, body[:200])
                        delivered = False
            except (aiohttp.ClientError, TimeoutError) as e:
                logger.warning("Telegram delivery to chat %s failed: %s", chat_id, e)
                delivered = False
        return delivered

    async def aclose(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

"""Notifier - delivers deal events to operators and deal chats."""

from escrow_engine.notifier.channels import LoggingChannel, TelegramChannel
from escrow_engine.notifier.dispatcher import EventDispatcher, NotificationChannel
from escrow_engine.notifier.formatter import FormattedNotification, NotificationFormatter

__all__ = [
    "EventDispatcher",
    "FormattedNotification",
    "LoggingChannel",
    "NotificationChannel",
    "NotificationFormatter",
    "TelegramChannel",
]

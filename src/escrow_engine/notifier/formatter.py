"""Deal event formatter for notification channels.

This module turns DealEvent objects into short human-readable messages in
Telegram MarkdownV2 and plain text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

from escrow_engine.engine.events import DealEvent, DealEventKind

BLOCK_EXPLORER_ADDRESS_URL = {
    "BTC": "https://www.blockchain.com/explorer/addresses/btc/{address}",
    "LTC": "https://blockchair.com/litecoin/address/{address}",
}
BLOCK_EXPLORER_TX_URL = {
    "BTC": "https://www.blockchain.com/explorer/transactions/btc/{tx}",
    "LTC": "https://blockchair.com/litecoin/transaction/{tx}",
}

TELEGRAM_SPECIAL_CHARS = "_*[]()~`>#+-=|{}.!\\"

TITLES: dict[DealEventKind, str] = {
    DealEventKind.DEAL_CREATED: "🆕 Deal created",
    DealEventKind.ESCROW_ASSIGNED: "🔐 Escrow address ready",
    DealEventKind.DEAL_FUNDED: "💰 Deal funded",
    DealEventKind.FUNDS_RELEASED: "✅ Funds released",
    DealEventKind.FEE_TRANSFER_FAILED: "⚠️ Fee transfer failed",
    DealEventKind.DEAL_CANCELLED: "❌ Deal cancelled",
    DealEventKind.DEAL_EXPIRED: "⌛ Deal expired",
    DealEventKind.DEAL_EXTENDED: "⏳ Deal extended",
    DealEventKind.EXPIRY_REMINDER: "⏰ Payment window closing",
    DealEventKind.DISPUTE_OPENED: "🚨 Dispute opened",
    DealEventKind.DISPUTE_RESOLVED: "🤝 Dispute resolved",
    DealEventKind.LATE_PAYMENT: "🚨 Late payment received",
    DealEventKind.RELEASE_NEEDS_REVIEW: "🚨 Release needs manual review",
}

# Payload keys rendered, in order, with their labels.
FIELD_LABELS: tuple[tuple[str, str], ...] = (
    ("amount", "Amount"),
    ("seller_amount", "Seller receives"),
    ("overpaid", "Overpaid"),
    ("observed", "Observed"),
    ("address", "Escrow address"),
    ("expires_at", "Expires"),
    ("minutes_left", "Minutes left"),
    ("reason", "Reason"),
    ("note", "Note"),
    ("opened_by", "Opened by"),
    ("error", "Error"),
)
AMOUNT_KEYS = frozenset({"amount", "seller_amount", "overpaid", "observed"})


@dataclass
class FormattedNotification:
    """A deal event rendered for delivery."""

    title: str
    body: str
    telegram_markdown: str
    plain_text: str
    links: dict[str, str] = field(default_factory=dict)


def escape_markdown(text: str) -> str:
    """Escape special Telegram MarkdownV2 characters."""
    return "".join(f"\\{c}" if c in TELEGRAM_SPECIAL_CHARS else c for c in text)


class NotificationFormatter:
    """Formats deal events for Telegram and plain-text channels."""

    def __init__(self, verbosity: Literal["compact", "detailed"] = "detailed") -> None:
        self.verbosity = verbosity

    def format(self, event: DealEvent) -> FormattedNotification:
        title = TITLES.get(event.kind, event.kind.value)
        fields = self._fields(event)
        links = self._build_links(event)
        asset = event.asset.value

        if self.verbosity == "compact":
            body = f"{event.deal_number} ({asset})"
        else:
            body = "\n".join([f"Deal: {event.deal_number}", f"Asset: {asset}", *(f"{k}: {v}" for k, v in fields)])

        plain = [title.upper(), "=" * 30, "", f"Deal: {event.deal_number}", f"Asset: {asset}"]
        plain.extend(f"{label}: {value}" for label, value in fields)
        if links:
            plain.append("")
            plain.extend(f"{name.title()}: {url}" for name, url in links.items())

        md = [f"*{escape_markdown(title)}*", "", f"*Deal:* `{escape_markdown(event.deal_number)}`"]
        md.append(f"*Asset:* {escape_markdown(asset)}")
        for label, value in fields:
            if label == "Escrow address":
                md.append(f"*{label}:* `{escape_markdown(value)}`")
            else:
                md.append(f"*{escape_markdown(label)}:* {escape_markdown(value)}")
        if links:
            md.append("")
            md.extend(f"[View {escape_markdown(name)}]({url})" for name, url in links.items())

        return FormattedNotification(
            title=title,
            body=body,
            telegram_markdown="\n".join(md),
            plain_text="\n".join(plain),
            links=links,
        )

    def _fields(self, event: DealEvent) -> list[tuple[str, str]]:
        fields = []
        for key, label in FIELD_LABELS:
            value = event.payload.get(key)
            if value is None or value == "":
                continue
            text = str(value)
            if key in AMOUNT_KEYS:
                if Decimal(text) == 0:
                    continue
                text = f"{text} {event.asset.value}"
            fields.append((label, text))
        return fields

    def _build_links(self, event: DealEvent) -> dict[str, str]:
        links = {}
        address = event.payload.get("address")
        if address:
            links["address"] = BLOCK_EXPLORER_ADDRESS_URL[event.asset.value].format(address=address)
        tx_hash = event.payload.get("tx_hash")
        if tx_hash:
            links["transaction"] = BLOCK_EXPLORER_TX_URL[event.asset.value].format(tx=tx_hash)
        return links

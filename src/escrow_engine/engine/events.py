"""Notification intents emitted after committed transitions.

Events are plain data. Delivery belongs to the notifier; a failed delivery
never affects the transition that produced the event.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from escrow_engine.assets import Asset
from escrow_engine.storage.repos import DealDTO


class DealEventKind(str, Enum):
    DEAL_CREATED = "deal_created"
    ESCROW_ASSIGNED = "escrow_assigned"
    DEAL_FUNDED = "deal_funded"
    FUNDS_RELEASED = "funds_released"
    FEE_TRANSFER_FAILED = "fee_transfer_failed"
    DEAL_CANCELLED = "deal_cancelled"
    DEAL_EXPIRED = "deal_expired"
    DEAL_EXTENDED = "deal_extended"
    EXPIRY_REMINDER = "expiry_reminder"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    LATE_PAYMENT = "late_payment"
    RELEASE_NEEDS_REVIEW = "release_needs_review"


# Kinds that operators must see, regardless of the deal's own chat.
ADMIN_EVENT_KINDS = frozenset(
    {
        DealEventKind.FEE_TRANSFER_FAILED,
        DealEventKind.DISPUTE_OPENED,
        DealEventKind.LATE_PAYMENT,
        DealEventKind.RELEASE_NEEDS_REVIEW,
    }
)


@dataclass(frozen=True)
class DealEvent:
    kind: DealEventKind
    deal_id: int
    deal_number: str
    asset: Asset
    group_ref: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def needs_admin_attention(self) -> bool:
        return self.kind in ADMIN_EVENT_KINDS

    @classmethod
    def for_deal(cls, kind: DealEventKind, deal: DealDTO, **payload: Any) -> DealEvent:
        return cls(
            kind=kind,
            deal_id=deal.id,
            deal_number=deal.deal_number,
            asset=deal.asset,
            group_ref=deal.group_ref,
            payload=payload,
        )


class EventPublisher(Protocol):
    """Receives events after the transition that produced them committed."""

    async def publish(self, events: Sequence[DealEvent]) -> None: ...

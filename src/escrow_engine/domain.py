"""Domain enumerations shared by storage, engine and notifier."""

from __future__ import annotations

from enum import Enum


class DealStatus(str, Enum):
    """Deal lifecycle states. ``is_disputed`` is tracked separately."""

    PENDING = "PENDING"
    WAITING_PAYMENT = "WAITING_PAYMENT"
    FUNDED = "FUNDED"
    RELEASED = "RELEASED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({DealStatus.RELEASED, DealStatus.CANCELLED, DealStatus.EXPIRED})
CANCELLABLE_STATUSES = frozenset({DealStatus.PENDING, DealStatus.WAITING_PAYMENT})
DISPUTABLE_STATUSES = frozenset({DealStatus.WAITING_PAYMENT, DealStatus.FUNDED})
WALLET_BINDING_STATUSES = frozenset({DealStatus.PENDING, DealStatus.WAITING_PAYMENT})


class PartyRole(str, Enum):
    BUYER = "BUYER"
    SELLER = "SELLER"


class TxDirection(str, Enum):
    DEPOSIT = "DEPOSIT"
    RELEASE = "RELEASE"
    FEE = "FEE"
    REFERRAL = "REFERRAL"
    REFUND = "REFUND"


class TxStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class AuditAction(str, Enum):
    DEAL_CREATED = "DEAL_CREATED"
    DEAL_UPDATED = "DEAL_UPDATED"
    WALLET_SET = "WALLET_SET"
    ESCROW_GENERATED = "ESCROW_GENERATED"
    DEAL_FUNDED = "DEAL_FUNDED"
    OVERPAYMENT_DETECTED = "OVERPAYMENT_DETECTED"
    LATE_PAYMENT_DETECTED = "LATE_PAYMENT_DETECTED"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    RELEASE_FAILED = "RELEASE_FAILED"
    FEE_TRANSFERRED = "FEE_TRANSFERRED"
    FEE_TRANSFER_FAILED = "FEE_TRANSFER_FAILED"
    DEAL_CANCELLED = "DEAL_CANCELLED"
    DEAL_EXPIRED = "DEAL_EXPIRED"
    DEAL_EXTENDED = "DEAL_EXTENDED"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    ACCESS_DENIED = "ACCESS_DENIED"
    PAYOUT_WALLET_SET = "PAYOUT_WALLET_SET"
    REFERRAL_GROUP_CREATED = "REFERRAL_GROUP_CREATED"
    USER_REGISTERED = "USER_REGISTERED"

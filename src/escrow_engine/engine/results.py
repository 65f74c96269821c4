"""Structured outcomes returned by engine operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Generic, TypeVar

from escrow_engine.domain import DealStatus, PartyRole
from escrow_engine.engine.errors import ErrorKind, EscrowError
from escrow_engine.storage.repos import DealDTO, WalletDTO

T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a public engine operation.

    ``success=False`` with ``partial_effect=False`` means nothing changed.
    ``partial_effect=True`` means an irreversible effect (a broadcast)
    happened and the failure needs manual follow-up.
    """

    success: bool
    data: T | None = None
    error: ErrorKind | None = None
    message: str | None = None
    partial_effect: bool = False
    warnings: tuple[str, ...] = ()

    @classmethod
    def ok(cls, data: T | None = None, *, warnings: tuple[str, ...] = ()) -> OperationResult[T]:
        return cls(success=True, data=data, warnings=warnings)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str | None = None,
        *,
        partial_effect: bool = False,
    ) -> OperationResult[T]:
        return cls(success=False, error=kind, message=message or kind.value, partial_effect=partial_effect)

    @classmethod
    def from_error(cls, error: EscrowError) -> OperationResult[T]:
        return cls.fail(error.kind, error.message, partial_effect=error.partial_effect)


@dataclass(frozen=True)
class PaymentStatus:
    """What the chain shows for a deal's escrow address."""

    deal_id: int
    status: DealStatus
    funded: bool
    pending: bool
    underpaid: bool
    required_amount: Decimal
    confirmed_amount: Decimal
    unconfirmed_amount: Decimal
    confirmations: int
    required_confirmations: int
    overpaid_amount: Decimal = Decimal(0)
    late_payment: bool = False


@dataclass(frozen=True)
class WalletBinding:
    deal: DealDTO
    role: PartyRole
    wallet: WalletDTO
    escrow_assigned: bool = False


@dataclass(frozen=True)
class ExpiryOutcome:
    deal: DealDTO
    expired: bool
    reason: str | None = None


@dataclass(frozen=True)
class ReleaseReceipt:
    """Result of a successful release."""

    deal: DealDTO
    release_tx_hash: str
    seller_amount: Decimal
    fee_tx_hash: str | None = None
    fee_transfer_pending: bool = False
    platform_amount: Decimal = Decimal(0)
    referral_amount: Decimal = Decimal(0)
    refund_amount: Decimal = Decimal(0)
    notes: tuple[str, ...] = field(default_factory=tuple)

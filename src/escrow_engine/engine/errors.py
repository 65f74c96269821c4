"""Error taxonomy for engine operations.

Internally the engine raises :class:`EscrowError` subclasses; the public
operation boundary converts them into an ``OperationResult`` carrying the
stable ``kind`` string, so callers switch on kinds, never on messages.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    # validation
    INVALID_PARTICIPANTS = "invalid_participants"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_ADDRESS = "invalid_address"
    INVALID_ASSET = "invalid_asset"
    INVALID_EXTENSION = "invalid_extension"
    INVALID_REFERRAL_GROUP = "invalid_referral_group"
    # state conflict
    DEAL_NOT_FOUND = "deal_not_found"
    INVALID_STATE = "invalid_state"
    ROLE_ALREADY_BOUND = "role_already_bound"
    ESCROW_ALREADY_ASSIGNED = "escrow_already_assigned"
    ALREADY_DISPUTED = "already_disputed"
    DEAL_DISPUTED = "deal_disputed"
    CANNOT_CANCEL_FUNDED = "cannot_cancel_funded"
    DEAL_EXPIRED = "deal_expired"
    SELLER_WALLET_MISSING = "seller_wallet_missing"
    # authorization
    NOT_AUTHORIZED = "not_authorized"
    # custody
    DECRYPTION_FAILED = "decryption_failed"
    KEY_GENERATION_FAILED = "key_generation_failed"
    # upstream
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    BROADCAST_FAILED = "broadcast_failed"
    INSUFFICIENT_ESCROW_BALANCE = "insufficient_escrow_balance"
    # persistence / unexpected
    PERSISTENCE_ERROR = "persistence_error"
    INTERNAL_ERROR = "internal_error"


class EscrowError(Exception):
    """Base exception for engine errors."""

    default_kind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str = "", *, kind: ErrorKind | None = None, partial_effect: bool = False) -> None:
        self.kind = kind or self.default_kind
        self.partial_effect = partial_effect
        super().__init__(message or self.kind.value)

    @property
    def message(self) -> str:
        return str(self)


class DealValidationError(EscrowError):
    """Input rejected before any effect."""

    default_kind = ErrorKind.INVALID_AMOUNT


class DealNotFoundError(EscrowError):
    default_kind = ErrorKind.DEAL_NOT_FOUND


class StateConflictError(EscrowError):
    """The deal is not in a state that allows the operation."""

    default_kind = ErrorKind.INVALID_STATE


class StaleStateError(StateConflictError):
    """A compare-and-set lost against a concurrent transition."""

    def __init__(self, message: str = "deal state changed concurrently") -> None:
        super().__init__(message, kind=ErrorKind.INVALID_STATE)


class NotAuthorizedError(EscrowError):
    """The requester may not perform the operation on this deal."""

    default_kind = ErrorKind.NOT_AUTHORIZED

    def __init__(self, message: str = "", *, deal_id: int | None = None, requester_ref: str | None = None) -> None:
        super().__init__(message or "requester is not authorized for this operation")
        self.deal_id = deal_id
        self.requester_ref = requester_ref


class CustodyFailure(EscrowError):
    default_kind = ErrorKind.DECRYPTION_FAILED


class UpstreamError(EscrowError):
    """The chain provider failed or refused a request."""

    default_kind = ErrorKind.PROVIDER_UNAVAILABLE

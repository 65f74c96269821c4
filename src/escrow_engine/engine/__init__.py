"""Deal lifecycle engine - state machine, release orchestration, admin actions."""

from escrow_engine.engine.admin import AdminService
from escrow_engine.engine.errors import ErrorKind, EscrowError
from escrow_engine.engine.events import DealEvent, DealEventKind, EventPublisher
from escrow_engine.engine.lifecycle import DealLifecycleEngine, DealOptions
from escrow_engine.engine.payouts import PayoutLeg, ReleasePlan, plan_release
from escrow_engine.engine.queries import DealQueries
from escrow_engine.engine.results import (
    ExpiryOutcome,
    OperationResult,
    PaymentStatus,
    ReleaseReceipt,
    WalletBinding,
)

__all__ = [
    "AdminService",
    "DealEvent",
    "DealEventKind",
    "DealLifecycleEngine",
    "DealOptions",
    "DealQueries",
    "ErrorKind",
    "EscrowError",
    "EventPublisher",
    "ExpiryOutcome",
    "OperationResult",
    "PaymentStatus",
    "PayoutLeg",
    "ReleasePlan",
    "ReleaseReceipt",
    "WalletBinding",
    "plan_release",
]

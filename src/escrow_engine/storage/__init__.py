"""Storage layer - Database schemas and repositories."""

from escrow_engine.storage.database import (
    DatabaseManager,
    build_async_engine,
    is_transient_error,
)
from escrow_engine.storage.models import (
    AuditLogModel,
    Base,
    DealModel,
    DealWalletModel,
    PayoutWalletModel,
    ReferralGroupModel,
    TransactionModel,
    UserModel,
    WalletModel,
)
from escrow_engine.storage.repos import (
    AuditRepository,
    DealDTO,
    DealRepository,
    PayoutWalletRepository,
    ReferralGroupRepository,
    StatsRepository,
    TransactionDTO,
    TransactionRepository,
    UserDTO,
    UserRepository,
    WalletDTO,
    WalletRepository,
)

__all__ = [
    "AuditLogModel",
    "AuditRepository",
    "Base",
    "DatabaseManager",
    "DealDTO",
    "DealModel",
    "DealRepository",
    "DealWalletModel",
    "PayoutWalletModel",
    "PayoutWalletRepository",
    "ReferralGroupModel",
    "ReferralGroupRepository",
    "StatsRepository",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "UserDTO",
    "UserModel",
    "UserRepository",
    "WalletDTO",
    "WalletModel",
    "WalletRepository",
    "build_async_engine",
    "is_transient_error",
]

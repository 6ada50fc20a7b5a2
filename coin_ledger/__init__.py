"""
Coin Ledger for Loyalty Rewards

This module provides:
- Per-user coin balances with atomic, locked credit/debit/reversal
- Earn and redeem claims gated by brand caps and admin review
- Transaction lifecycle: PENDING → APPROVED → (PROCESSED) → PAID, or PENDING → REJECTED
- One-time welcome bonus
- Append-only ledger journal for audit
"""

from .config import LedgerConfig, InMemoryConfigSource
from .errors import (
    CoinLedgerError,
    ValidationError,
    CapExceededError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    DuplicateWelcomeBonusError,
    UserNotActiveError,
    ConcurrencyConflict,
    NotFoundError,
)
from .models import (
    TransactionType,
    TransactionStatus,
    EntryType,
    Brand,
    User,
    CoinBalance,
    CoinTransaction,
    LedgerEntry,
)
from .service import CoinLedgerService
from .storage import InMemoryStorage

__all__ = [
    "LedgerConfig",
    "InMemoryConfigSource",
    "CoinLedgerError",
    "ValidationError",
    "CapExceededError",
    "InsufficientBalanceError",
    "InvalidStateTransitionError",
    "DuplicateWelcomeBonusError",
    "UserNotActiveError",
    "ConcurrencyConflict",
    "NotFoundError",
    "TransactionType",
    "TransactionStatus",
    "EntryType",
    "Brand",
    "User",
    "CoinBalance",
    "CoinTransaction",
    "LedgerEntry",
    "CoinLedgerService",
    "InMemoryStorage",
]

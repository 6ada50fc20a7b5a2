"""
Typed errors raised by the coin ledger.

Every error carries a machine-readable ``code``; callers catch by type and
surface ``code`` to clients. Only ``ConcurrencyConflict`` is safe to retry.
"""

from decimal import Decimal
from typing import Optional


class CoinLedgerError(Exception):
    code = "COIN_LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CoinLedgerError):
    code = "VALIDATION_ERROR"


class CapExceededError(CoinLedgerError):
    code = "CAP_EXCEEDED"

    def __init__(self, message: str, limit: Optional[Decimal] = None, requested: Optional[Decimal] = None):
        super().__init__(message)
        self.limit = limit
        self.requested = requested


class InsufficientBalanceError(CoinLedgerError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, user_id, available: Decimal, requested: Decimal):
        owner = f" for user {user_id}" if user_id is not None else ""
        super().__init__(f"Insufficient coin balance{owner}: available {available}, requested {requested}")
        self.user_id = user_id
        self.available = available
        self.requested = requested


class InvalidStateTransitionError(CoinLedgerError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, message: str, current_status: Optional[str] = None, requested_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class DuplicateWelcomeBonusError(CoinLedgerError):
    code = "DUPLICATE_WELCOME_BONUS"

    def __init__(self, user_id):
        super().__init__(f"Welcome bonus already processed for user {user_id}")
        self.user_id = user_id


class UserNotActiveError(CoinLedgerError):
    code = "USER_NOT_ACTIVE"

    def __init__(self, user_id, status: str):
        super().__init__(f"User {user_id} is not active (status {status})")
        self.user_id = user_id
        self.status = status


class ConcurrencyConflict(CoinLedgerError):
    code = "CONCURRENCY_CONFLICT"
    retryable = True

    def __init__(self, lock_key: str, timeout: float):
        super().__init__(f"Could not acquire lock {lock_key} within {timeout}s")
        self.lock_key = lock_key
        self.timeout = timeout


class NotFoundError(CoinLedgerError):
    code = "NOT_FOUND"


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class BrandNotFoundError(NotFoundError):
    code = "BRAND_NOT_FOUND"

    def __init__(self, brand_id):
        super().__init__(f"Brand {brand_id} not found")
        self.brand_id = brand_id


class TransactionNotFoundError(NotFoundError):
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id):
        super().__init__(f"Transaction {transaction_id} not found")
        self.transaction_id = transaction_id

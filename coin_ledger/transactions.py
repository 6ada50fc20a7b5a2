import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional, Union
from uuid import UUID, uuid4

from .errors import InvalidStateTransitionError, TransactionNotFoundError, ValidationError
from .models import CoinTransaction, TransactionStatus, TransactionType, to_coins
from .storage import UnitOfWork

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.APPROVED, TransactionStatus.REJECTED}),
    TransactionStatus.APPROVED: frozenset({TransactionStatus.PROCESSED, TransactionStatus.PAID}),
    TransactionStatus.PROCESSED: frozenset({TransactionStatus.PAID}),
    TransactionStatus.REJECTED: frozenset(),
    TransactionStatus.PAID: frozenset(),
}

_ACTION_NAMES = {
    TransactionStatus.APPROVED: "approve",
    TransactionStatus.REJECTED: "reject",
    TransactionStatus.PROCESSED: "mark as processed",
    TransactionStatus.PAID: "process payment",
    TransactionStatus.PENDING: "reopen",
}

# Types that never wait for review and are recorded already approved
AUTO_APPROVED_TYPES = frozenset({TransactionType.WELCOME_BONUS, TransactionType.ADJUSTMENT})


def txn_lock_key(transaction_id: UUID) -> str:
    return f"txn:{transaction_id}"


def _transition_error(current: TransactionStatus, target: TransactionStatus) -> InvalidStateTransitionError:
    if current == TransactionStatus.PENDING:
        state = "transaction is still PENDING"
    else:
        state = f"transaction already {current.value}"
    return InvalidStateTransitionError(
        f"Cannot {_ACTION_NAMES[target]}: {state}",
        current_status=current.value,
        requested_status=target.value,
    )


def check_transition(current: TransactionStatus, target: TransactionStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise _transition_error(current, target)


def validate_transaction(txn: CoinTransaction) -> None:
    """Pure checks on a record before it is written."""
    if txn.amount == 0:
        raise ValidationError("Transaction amount cannot be zero")

    if txn.type in (TransactionType.EARN, TransactionType.WELCOME_BONUS):
        if txn.amount <= 0:
            raise ValidationError("Credit transactions (WELCOME_BONUS, EARN) must have positive amounts")
        if txn.coins_redeemed is not None:
            raise ValidationError(f"{txn.type.value} transactions cannot carry coinsRedeemed")
    elif txn.type == TransactionType.REDEEM:
        if txn.amount <= 0:
            raise ValidationError("Debit transactions (REDEEM) must have positive amounts")
        if txn.coins_earned is not None:
            raise ValidationError("REDEEM transactions cannot carry coinsEarned")

    if txn.type in (TransactionType.EARN, TransactionType.REDEEM):
        if txn.brand_id is None:
            raise ValidationError(f"{txn.type.value} transactions require a brand")
        if txn.status != TransactionStatus.PENDING:
            raise ValidationError(f"{txn.type.value} transactions must be created PENDING")
    elif txn.status != TransactionStatus.APPROVED:
        raise ValidationError(f"{txn.type.value} transactions must be created APPROVED")


class TransactionRecordStore:
    """Owns ``CoinTransaction`` rows; status only changes through ``transition``."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def create(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        type: TransactionType,
        amount: Decimal,
        brand_id: Optional[UUID] = None,
        bill_amount: Optional[Decimal] = None,
        coins_earned: Optional[Decimal] = None,
        coins_redeemed: Optional[Decimal] = None,
        receipt_url: Optional[str] = None,
        bill_date: Optional[date] = None,
        admin_notes: Optional[str] = None,
        processed_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CoinTransaction:
        now = now or self.clock()
        auto_approved = type in AUTO_APPROVED_TYPES
        txn = CoinTransaction(
            id=uuid4(),
            user_id=user_id,
            brand_id=brand_id,
            type=type,
            amount=to_coins(amount),
            bill_amount=bill_amount,
            coins_earned=coins_earned,
            coins_redeemed=coins_redeemed,
            status=TransactionStatus.APPROVED if auto_approved else TransactionStatus.PENDING,
            receipt_url=receipt_url,
            bill_date=bill_date,
            admin_notes=admin_notes,
            processed_by=processed_by if auto_approved else None,
            processed_at=now if auto_approved else None,
            created_at=now,
            updated_at=now,
        )
        validate_transaction(txn)
        uow.lock(txn_lock_key(txn.id))
        uow.put_transaction(txn.model_dump())
        logger.info(
            "Recorded %s transaction %s for user %s: %s coins (%s)",
            txn.type.value, txn.id, user_id, txn.amount, txn.status.value,
        )
        return txn

    def load_for_update(self, uow: UnitOfWork, transaction_id: UUID) -> CoinTransaction:
        uow.lock(txn_lock_key(transaction_id))
        row = uow.transaction_row(transaction_id)
        if row is None:
            raise TransactionNotFoundError(transaction_id)
        return CoinTransaction(**row)

    def transition(
        self,
        uow: UnitOfWork,
        transaction_id: UUID,
        from_expected: Union[TransactionStatus, Iterable[TransactionStatus]],
        to: TransactionStatus,
        admin_id: str,
        admin_notes: Optional[str] = None,
        external_payment_ref: Optional[str] = None,
    ) -> CoinTransaction:
        expected = {from_expected} if isinstance(from_expected, TransactionStatus) else set(from_expected)
        txn = self.load_for_update(uow, transaction_id)

        if txn.is_terminal():
            logger.warning(
                "Refusing %s -> %s on transaction %s: already terminal",
                txn.status.value, to.value, transaction_id,
            )
            raise _transition_error(txn.status, to)
        if txn.status not in expected:
            raise _transition_error(txn.status, to)
        check_transition(txn.status, to)

        now = self.clock()
        row = txn.model_dump()
        row["status"] = to
        row["processed_at"] = now
        row["processed_by"] = admin_id
        row["updated_at"] = now
        if admin_notes:
            row["admin_notes"] = admin_notes
        if to == TransactionStatus.PAID:
            row["transaction_id"] = external_payment_ref
            row["payment_processed_at"] = now
        uow.put_transaction(row)
        logger.info(
            "Transaction %s: %s -> %s by admin %s",
            transaction_id, txn.status.value, to.value, admin_id,
        )
        return CoinTransaction(**row)

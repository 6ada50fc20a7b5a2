import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .errors import InsufficientBalanceError, ValidationError
from .models import CoinBalance, EntryType, LedgerEntry, to_coins
from .storage import UnitOfWork

logger = logging.getLogger(__name__)


def user_lock_key(user_id: UUID) -> str:
    return f"user:{user_id}"


class BalanceLedger:
    """Sole writer of ``CoinBalance`` rows.

    ``apply_delta`` and ``reverse_delta`` run inside the caller's unit of work
    and take the user's lock, so the balance row and the caller's other writes
    commit or roll back together. Each call appends an entry to the journal.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def apply_delta(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        amount: Decimal,
        kind: EntryType,
        transaction_id: UUID,
        description: str,
    ) -> CoinBalance:
        amount = self._magnitude(amount)
        if kind == EntryType.REVERSAL:
            raise ValidationError("Use reverse_delta to record a reversal")

        row = self._load_for_update(uow, user_id)
        old_balance = row["balance"]
        if kind == EntryType.CREDIT:
            row["balance"] = old_balance + amount
            row["total_earned"] = row["total_earned"] + amount
            signed = amount
        else:
            if old_balance < amount:
                raise InsufficientBalanceError(user_id, old_balance, amount)
            row["balance"] = old_balance - amount
            row["total_redeemed"] = row["total_redeemed"] + amount
            signed = -amount

        return self._save(uow, row, old_balance, signed, kind, transaction_id, description, None)

    def reverse_delta(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        amount: Decimal,
        kind: EntryType,
        transaction_id: UUID,
        description: str,
    ) -> CoinBalance:
        """Undo an earlier ``apply_delta`` of the same kind and amount.

        Reversing a credit removes coins (and may fail when they were already
        spent); reversing a debit returns them.
        """
        amount = self._magnitude(amount)
        row = self._load_for_update(uow, user_id)
        old_balance = row["balance"]
        if kind == EntryType.CREDIT:
            if old_balance < amount:
                raise InsufficientBalanceError(user_id, old_balance, amount)
            row["balance"] = old_balance - amount
            row["total_earned"] = row["total_earned"] - amount
            signed = -amount
        elif kind == EntryType.DEBIT:
            row["balance"] = old_balance + amount
            row["total_redeemed"] = row["total_redeemed"] - amount
            signed = amount
        else:
            raise ValidationError(f"Cannot reverse a {kind.value} entry")

        original = uow.find_entries(
            user_id,
            lambda e: e["transaction_id"] == transaction_id and e["entry_type"] == kind,
        )
        reference_id = original[0]["id"] if original else None
        return self._save(
            uow, row, old_balance, signed, EntryType.REVERSAL, transaction_id, description, reference_id
        )

    def current(self, uow: UnitOfWork, user_id: UUID) -> CoinBalance:
        """Balance as seen by ``uow``, taking the user's lock first."""
        uow.lock(user_lock_key(user_id))
        row = uow.balance_row(user_id)
        if row is None:
            return CoinBalance(user_id=user_id)
        return CoinBalance(**row)

    @staticmethod
    def _magnitude(amount: Decimal) -> Decimal:
        amount = to_coins(amount)
        if amount <= 0:
            raise ValidationError(f"Ledger delta must be a positive magnitude, got {amount}")
        return amount

    @staticmethod
    def _load_for_update(uow: UnitOfWork, user_id: UUID) -> dict:
        uow.lock(user_lock_key(user_id))
        row = uow.balance_row(user_id)
        if row is None:
            row = CoinBalance(user_id=user_id).model_dump()
            logger.info("Creating coin balance for user %s", user_id)
        return row

    def _save(
        self,
        uow: UnitOfWork,
        row: dict,
        old_balance: Decimal,
        signed: Decimal,
        entry_type: EntryType,
        transaction_id: UUID,
        description: str,
        reference_entry_id: Optional[UUID],
    ) -> CoinBalance:
        now = self.clock()
        row["last_updated"] = now
        uow.put_balance(row)
        entry = LedgerEntry(
            id=uuid4(),
            user_id=row["user_id"],
            entry_type=entry_type,
            amount=signed,
            balance_after=row["balance"],
            transaction_id=transaction_id,
            reference_entry_id=reference_entry_id,
            description=description,
            created_at=now,
        )
        uow.add_entry(entry.model_dump())
        logger.info(
            "Coin balance staged for user %s: %s -> %s (%s%s) [transaction %s]",
            row["user_id"], old_balance, row["balance"],
            "+" if signed > 0 else "", signed, transaction_id,
        )
        return CoinBalance(**row)

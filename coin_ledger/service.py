import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from .balance import BalanceLedger, user_lock_key
from .caps import BrandCapEnforcer, check_earn_admissible, check_redeem_admissible
from .config import LedgerConfig
from .errors import TransactionNotFoundError, UserNotActiveError, ValidationError
from .models import (
    AdjustmentRequest,
    ApproveRequest,
    BalanceResponse,
    BalanceSummary,
    CoinTransaction,
    DecisionResponse,
    EntryType,
    LedgerEntry,
    LedgerHistoryResponse,
    MAX_AMOUNT,
    ProcessPaymentRequest,
    RejectRequest,
    SubmissionResponse,
    SubmitEarnRequest,
    SubmitRedeemRequest,
    TransactionStats,
    TransactionStatus,
    TransactionType,
    UserStatus,
    WelcomeBonusResponse,
    to_coins,
)
from .storage import InMemoryStorage
from .transactions import TransactionRecordStore
from .validation import (
    check_submission_limits,
    validate_bill,
    validate_payment_reference,
    validate_rejection_reason,
)
from .welcome import WelcomeBonusIssuer

logger = logging.getLogger(__name__)

# Entry kind that each claim type applied to the balance when it was recorded
_SUBMISSION_KIND = {
    TransactionType.EARN: EntryType.CREDIT,
    TransactionType.REDEEM: EntryType.DEBIT,
}


class CoinLedgerService:
    """Entry point for every ledger operation.

    Each mutating method validates its input, then runs one unit of work that
    locks the affected rows, transitions the transaction record and applies
    the balance change. Any failure inside the unit leaves no trace.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.config = config or LedgerConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.records = TransactionRecordStore(self.clock)
        self.ledger = BalanceLedger(self.clock)
        self.caps = BrandCapEnforcer()
        self.welcome = WelcomeBonusIssuer(self.storage, self.records, self.ledger)

    def submit_earn(
        self, user_id: UUID, request: SubmitEarnRequest, config: Optional[LedgerConfig] = None
    ) -> SubmissionResponse:
        config = config or self.config
        now = self.clock()
        self._require_active_user(user_id)
        brand = self.storage.get_brand(request.brand_id)
        validate_bill(request.bill_amount, request.bill_date, config, now.date())
        coins_earned = check_earn_admissible(brand, request.bill_amount)

        with self.storage.unit_of_work(config.lock_timeout_seconds) as uow:
            uow.lock(user_lock_key(user_id))
            check_submission_limits(uow, user_id, brand.id, TransactionType.EARN, config, now)
            self.caps.check_overall_cap(uow, brand, TransactionType.EARN, coins_earned)
            txn = self.records.create(
                uow,
                user_id=user_id,
                type=TransactionType.EARN,
                amount=coins_earned,
                brand_id=brand.id,
                bill_amount=request.bill_amount,
                coins_earned=coins_earned,
                receipt_url=request.receipt_url,
                bill_date=request.bill_date,
                now=now,
            )
            balance = self.ledger.apply_delta(
                uow, user_id, coins_earned, EntryType.CREDIT, txn.id, f"Earn at {brand.name}"
            )

        return SubmissionResponse(
            transaction_id=txn.id, status=txn.status, new_balance=balance.balance, transaction=txn
        )

    def submit_redeem(
        self, user_id: UUID, request: SubmitRedeemRequest, config: Optional[LedgerConfig] = None
    ) -> SubmissionResponse:
        config = config or self.config
        now = self.clock()
        self._require_active_user(user_id)
        brand = self.storage.get_brand(request.brand_id)
        validate_bill(request.bill_amount, request.bill_date, config, now.date())
        coins = to_coins(request.coins_to_redeem)

        with self.storage.unit_of_work(config.lock_timeout_seconds) as uow:
            current = self.ledger.current(uow, user_id)
            check_redeem_admissible(brand, request.bill_amount, coins, current.balance)
            check_submission_limits(uow, user_id, brand.id, TransactionType.REDEEM, config, now)
            self.caps.check_overall_cap(uow, brand, TransactionType.REDEEM, coins)
            txn = self.records.create(
                uow,
                user_id=user_id,
                type=TransactionType.REDEEM,
                amount=coins,
                brand_id=brand.id,
                bill_amount=request.bill_amount,
                coins_redeemed=coins,
                receipt_url=request.receipt_url,
                bill_date=request.bill_date,
                now=now,
            )
            balance = self.ledger.apply_delta(
                uow, user_id, coins, EntryType.DEBIT, txn.id, f"Redeem at {brand.name}"
            )

        return SubmissionResponse(
            transaction_id=txn.id, status=txn.status, new_balance=balance.balance, transaction=txn
        )

    def approve(
        self, transaction_id: UUID, request: ApproveRequest, config: Optional[LedgerConfig] = None
    ) -> DecisionResponse:
        config = config or self.config
        with self.storage.unit_of_work(config.lock_timeout_seconds) as uow:
            txn = self.records.load_for_update(uow, transaction_id)
            if txn.type not in _SUBMISSION_KIND:
                raise ValidationError(f"{txn.type.value} transactions do not require approval")
            updated = self.records.transition(
                uow, transaction_id, TransactionStatus.PENDING, TransactionStatus.APPROVED,
                admin_id=request.admin_id, admin_notes=request.admin_notes,
            )

        return DecisionResponse(
            transaction_id=updated.id,
            status=updated.status,
            transaction=updated,
            message=f"{updated.type.value} transaction approved",
        )

    def reject(
        self, transaction_id: UUID, request: RejectRequest, config: Optional[LedgerConfig] = None
    ) -> DecisionResponse:
        config = config or self.config
        reason = validate_rejection_reason(request.reason)
        notes = f"{reason}\n\n{request.admin_notes}" if request.admin_notes else reason

        with self.storage.unit_of_work(config.lock_timeout_seconds) as uow:
            txn = self.records.load_for_update(uow, transaction_id)
            kind = _SUBMISSION_KIND.get(txn.type)
            if kind is None:
                raise ValidationError(f"{txn.type.value} transactions cannot be rejected")
            uow.lock(user_lock_key(txn.user_id))
            updated = self.records.transition(
                uow, transaction_id, TransactionStatus.PENDING, TransactionStatus.REJECTED,
                admin_id=request.admin_id, admin_notes=notes,
            )
            balance = self.ledger.reverse_delta(
                uow, txn.user_id, txn.amount, kind, txn.id, f"Reversal: {reason}"
            )

        return DecisionResponse(
            transaction_id=updated.id,
            status=updated.status,
            new_balance=balance.balance,
            transaction=updated,
            message=f"{updated.type.value} transaction rejected",
        )

    def mark_processed(
        self, transaction_id: UUID, request: ApproveRequest, config: Optional[LedgerConfig] = None
    ) -> DecisionResponse:
        config = config or self.config
        with self.storage.unit_of_work(config.lock_timeout_seconds) as uow:
            txn = self.records.load_for_update(uow, transaction_id)
            if txn.type != TransactionType.REDEEM:
                raise ValidationError("Only redeem transactions can be marked as processed")
            updated = self.records.transition(
                uow, transaction_id, TransactionStatus.APPROVED, TransactionStatus.PROCESSED,
                admin_id=request.admin_id, admin_notes=request.admin_notes,
            )

        return DecisionResponse(
            transaction_id=updated.id,
            status=updated.status,
            transaction=updated,
            message="Redeem transaction marked as processed",
        )

    def process_payment(
        self, transaction_id: UUID, request: ProcessPaymentRequest, config: Optional[LedgerConfig] = None
    ) -> DecisionResponse:
        config = config or self.config
        reference = validate_payment_reference(request.external_payment_ref)

        with self.storage.unit_of_work(config.lock_timeout_seconds) as uow:
            txn = self.records.load_for_update(uow, transaction_id)
            if txn.type != TransactionType.REDEEM:
                raise ValidationError("Only redeem transactions can be processed for payment")
            uow.lock(f"payref:{reference}")
            owner = uow.payment_ref_owner(reference)
            if owner is not None and owner != transaction_id:
                raise ValidationError(f"Payment transaction ID {reference} is already in use")
            updated = self.records.transition(
                uow, transaction_id,
                (TransactionStatus.APPROVED, TransactionStatus.PROCESSED), TransactionStatus.PAID,
                admin_id=request.admin_id, admin_notes=request.admin_notes,
                external_payment_ref=reference,
            )
            uow.claim_payment_ref(reference, transaction_id)

        logger.info("Payment processed for transaction %s with reference %s", transaction_id, reference)
        return DecisionResponse(
            transaction_id=updated.id,
            status=updated.status,
            transaction=updated,
            message="Payment processed successfully",
        )

    def adjust(
        self, user_id: UUID, request: AdjustmentRequest, config: Optional[LedgerConfig] = None
    ) -> DecisionResponse:
        config = config or self.config
        amount = to_coins(request.amount)
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")
        if abs(amount) > MAX_AMOUNT:
            raise ValidationError(f"Adjustment amount cannot exceed {MAX_AMOUNT} coins")
        self.storage.get_user(user_id)
        notes = f"{request.reason}: {request.description}" if request.description else request.reason
        kind = EntryType.CREDIT if amount > 0 else EntryType.DEBIT

        with self.storage.unit_of_work(config.lock_timeout_seconds) as uow:
            uow.lock(user_lock_key(user_id))
            txn = self.records.create(
                uow,
                user_id=user_id,
                type=TransactionType.ADJUSTMENT,
                amount=amount,
                admin_notes=notes,
                processed_by=request.admin_id,
                now=self.clock(),
            )
            balance = self.ledger.apply_delta(
                uow, user_id, abs(amount), kind, txn.id, f"Adjustment: {request.reason}"
            )

        return DecisionResponse(
            transaction_id=txn.id,
            status=txn.status,
            new_balance=balance.balance,
            transaction=txn,
            message=f"Balance adjusted by {amount} coins",
        )

    def issue_welcome_bonus(self, user_id: UUID, config: Optional[LedgerConfig] = None) -> WelcomeBonusResponse:
        return self.welcome.issue(user_id, config or self.config)

    def check_welcome_bonus_eligibility(self, user_id: UUID) -> bool:
        return self.welcome.check_eligibility(user_id)

    def get_balance(self, user_id: UUID) -> BalanceResponse:
        row = self.storage.get_balance_row(user_id)
        if row is None:
            return BalanceResponse(
                user_id=user_id,
                balance=Decimal("0.00"),
                total_earned=Decimal("0.00"),
                total_redeemed=Decimal("0.00"),
            )
        return BalanceResponse(**row)

    def get_balance_summary(self, user_id: UUID) -> BalanceSummary:
        balance = self.get_balance(user_id)
        pending = self.storage.find_transactions(
            lambda t: t["user_id"] == user_id and t["status"] == TransactionStatus.PENDING
        )
        return BalanceSummary(
            **balance.model_dump(),
            pending_earn_requests=sum(1 for t in pending if t["type"] == TransactionType.EARN),
            pending_redeem_requests=sum(1 for t in pending if t["type"] == TransactionType.REDEEM),
        )

    def get_transaction(self, transaction_id: UUID) -> CoinTransaction:
        row = self.storage.get_transaction_row(transaction_id)
        if row is None:
            raise TransactionNotFoundError(transaction_id)
        return CoinTransaction(**row)

    def get_ledger_history(self, user_id: UUID) -> LedgerHistoryResponse:
        # Journal order breaks timestamp ties, newest first
        entries = [LedgerEntry(**e) for e in reversed(self.storage.entries_for(user_id))]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries,
            total_count=len(entries),
            current_balance=self.get_balance(user_id).balance,
        )

    def get_transaction_stats(self) -> TransactionStats:
        rows = self.storage.find_transactions(lambda _: True)
        earned_statuses = (TransactionStatus.APPROVED, TransactionStatus.PROCESSED, TransactionStatus.PAID)
        return TransactionStats(
            pending_earn=sum(
                1 for t in rows if t["type"] == TransactionType.EARN and t["status"] == TransactionStatus.PENDING
            ),
            pending_redeem=sum(
                1 for t in rows if t["type"] == TransactionType.REDEEM and t["status"] == TransactionStatus.PENDING
            ),
            total_earned=to_coins(sum(
                (t["amount"] for t in rows
                 if t["type"] == TransactionType.EARN and t["status"] in earned_statuses),
                Decimal("0"),
            )),
            total_redeemed=to_coins(sum(
                (t["amount"] for t in rows
                 if t["type"] == TransactionType.REDEEM and t["status"] == TransactionStatus.PAID),
                Decimal("0"),
            )),
            total_balance=to_coins(sum((b["balance"] for b in self.storage.all_balances()), Decimal("0"))),
        )

    def _require_active_user(self, user_id: UUID) -> None:
        user = self.storage.get_user(user_id)
        if user.status != UserStatus.ACTIVE:
            raise UserNotActiveError(user_id, user.status.value)

import logging
from uuid import UUID

from .balance import BalanceLedger, user_lock_key
from .config import LedgerConfig
from .errors import DuplicateWelcomeBonusError, UserNotActiveError
from .models import EntryType, TransactionType, UserStatus, WelcomeBonusResponse, to_coins
from .storage import InMemoryStorage
from .transactions import TransactionRecordStore

logger = logging.getLogger(__name__)


class WelcomeBonusIssuer:
    """Grants the one-time welcome bonus.

    The ``has_welcome_bonus_processed`` flag is re-read and set under the
    user's lock, in the same unit of work as the credit, so concurrent calls
    award the bonus at most once.
    """

    def __init__(self, storage: InMemoryStorage, records: TransactionRecordStore, ledger: BalanceLedger):
        self.storage = storage
        self.records = records
        self.ledger = ledger

    def issue(self, user_id: UUID, config: LedgerConfig) -> WelcomeBonusResponse:
        user = self.storage.get_user(user_id)
        if user.status != UserStatus.ACTIVE:
            raise UserNotActiveError(user_id, user.status.value)
        if user.has_welcome_bonus_processed:
            raise DuplicateWelcomeBonusError(user_id)

        amount = to_coins(config.welcome_bonus_amount)
        with self.storage.unit_of_work(config.lock_timeout_seconds) as uow:
            uow.lock(user_lock_key(user_id))
            user_row = uow.user_row(user_id)
            if user_row["has_welcome_bonus_processed"]:
                logger.warning("Duplicate welcome bonus request for user %s", user_id)
                raise DuplicateWelcomeBonusError(user_id)

            txn = self.records.create(
                uow,
                user_id=user_id,
                type=TransactionType.WELCOME_BONUS,
                amount=amount,
                coins_earned=amount,
                admin_notes="Welcome bonus",
                processed_by="system",
            )
            balance = self.ledger.apply_delta(
                uow, user_id, amount, EntryType.CREDIT, txn.id, "Welcome bonus credit"
            )
            user_row["has_welcome_bonus_processed"] = True
            uow.put_user(user_row)

        logger.info("Welcome bonus of %s coins awarded to user %s", amount, user_id)
        return WelcomeBonusResponse(
            transaction_id=txn.id,
            coins_awarded=amount,
            new_balance=balance.balance,
            message=f"Welcome bonus of {amount} coins awarded successfully!",
        )

    def check_eligibility(self, user_id: UUID) -> bool:
        user = self.storage.get_user(user_id)
        return user.status == UserStatus.ACTIVE and not user.has_welcome_bonus_processed

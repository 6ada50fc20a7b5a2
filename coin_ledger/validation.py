import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from .config import LedgerConfig
from .errors import ValidationError
from .models import TransactionStatus, TransactionType
from .storage import UnitOfWork

logger = logging.getLogger(__name__)


def validate_bill(bill_amount: Decimal, bill_date: date, config: LedgerConfig, today: date) -> None:
    if bill_amount <= 0:
        raise ValidationError("Bill amount must be greater than zero")
    if bill_amount < config.min_bill_amount:
        raise ValidationError(f"Bill amount must be at least {config.min_bill_amount}")
    if bill_date > today:
        raise ValidationError("Bill date cannot be in the future")
    if (today - bill_date).days > config.max_bill_age_days:
        raise ValidationError(f"Bill is too old. Maximum age allowed is {config.max_bill_age_days} days")


def validate_rejection_reason(reason: str) -> str:
    if reason is None or not reason.strip():
        raise ValidationError("A reason is required for rejection")
    return reason.strip()


def validate_payment_reference(reference: str) -> str:
    if reference is None or not reference.strip():
        raise ValidationError("Payment transaction ID is required")
    return reference.strip()


def check_submission_limits(
    uow: UnitOfWork,
    user_id: UUID,
    brand_id: UUID,
    type: TransactionType,
    config: LedgerConfig,
    now: datetime,
) -> None:
    """Per-user fraud-prevention rules; caller must hold the user's lock."""
    pending = uow.find_transactions(
        lambda t: t["user_id"] == user_id and t["status"] == TransactionStatus.PENDING
    )
    if len(pending) >= config.max_pending_requests:
        raise ValidationError(
            f"You already have {len(pending)} pending requests (maximum {config.max_pending_requests})"
        )

    if type == TransactionType.EARN and config.min_minutes_between_submissions > 0:
        window = timedelta(minutes=config.min_minutes_between_submissions)
        recent = [
            t for t in pending
            if t["type"] == TransactionType.EARN and t["brand_id"] == brand_id and now - t["created_at"] < window
        ]
        if recent:
            latest = max(t["created_at"] for t in recent)
            wait = config.min_minutes_between_submissions - int((now - latest).total_seconds() // 60)
            logger.warning("User %s resubmitted EARN for brand %s inside fraud window", user_id, brand_id)
            raise ValidationError(f"Please wait {wait} minutes before submitting another request")

    if type == TransactionType.REDEEM and config.block_redeem_with_pending_earn:
        if any(t["type"] == TransactionType.EARN for t in pending):
            raise ValidationError(
                "You have pending earn requests. Please wait for them to be processed before redeeming"
            )

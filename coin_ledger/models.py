from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from .errors import ValidationError


COIN_UNIT = Decimal("0.01")
# Largest amount a decimal(10,2) column holds
MAX_AMOUNT = Decimal("99999999.99")


def to_coins(value: Union[Decimal, int, float, str]) -> Decimal:
    """Quantize a coin or currency amount to the smallest coin unit, rounding half up."""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise InvalidOperation(value)
        return amount.quantize(COIN_UNIT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Amount {value} is not a valid coin amount")


def percentage_of(amount: Decimal, percentage: Decimal) -> Decimal:
    return to_coins(Decimal(amount) * Decimal(percentage) / Decimal(100))


class TransactionType(str, Enum):
    EARN = "EARN"
    REDEEM = "REDEEM"
    WELCOME_BONUS = "WELCOME_BONUS"
    ADJUSTMENT = "ADJUSTMENT"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSED = "PROCESSED"
    PAID = "PAID"


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    REVERSAL = "REVERSAL"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class User(BaseModel):
    id: UUID
    mobile_number: Optional[str] = None
    status: UserStatus = UserStatus.ACTIVE
    has_welcome_bonus_processed: bool = False

    model_config = ConfigDict(from_attributes=True)


class Brand(BaseModel):
    id: UUID
    name: str
    earning_percentage: Decimal = Field(default=Decimal("10"), ge=0, le=100)
    redemption_percentage: Decimal = Field(default=Decimal("30"), ge=0, le=100)
    min_redemption_amount: Decimal = Field(default=Decimal("1"), ge=0)
    max_redemption_amount: Optional[Decimal] = None
    brandwise_max_cap: Decimal = Field(default=Decimal("2000"), ge=0)
    overall_max_cap: Optional[Decimal] = Field(default=None, ge=0)
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _sync_redemption_ceiling(self) -> "Brand":
        # max_redemption_amount always mirrors the per-transaction cap
        self.max_redemption_amount = self.brandwise_max_cap
        if self.max_redemption_amount < self.min_redemption_amount:
            raise ValueError("maxRedemptionAmount must be greater than or equal to minRedemptionAmount")
        return self


class CoinBalance(BaseModel):
    user_id: UUID
    balance: Decimal = Decimal("0.00")
    total_earned: Decimal = Decimal("0.00")
    total_redeemed: Decimal = Decimal("0.00")
    last_updated: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CoinTransaction(BaseModel):
    id: UUID
    user_id: UUID
    brand_id: Optional[UUID] = None
    type: TransactionType
    amount: Decimal
    bill_amount: Optional[Decimal] = None
    coins_earned: Optional[Decimal] = None
    coins_redeemed: Optional[Decimal] = None
    status: TransactionStatus
    receipt_url: Optional[str] = None
    bill_date: Optional[date] = None
    admin_notes: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    payment_processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in (TransactionStatus.REJECTED, TransactionStatus.PAID)


class LedgerEntry(BaseModel):
    id: UUID
    user_id: UUID
    entry_type: EntryType
    amount: Decimal
    balance_after: Decimal
    transaction_id: UUID
    reference_entry_id: Optional[UUID] = None
    description: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubmitEarnRequest(BaseModel):
    brand_id: UUID
    bill_amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    bill_date: date
    receipt_url: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "brand_id": "770e8400-e29b-41d4-a716-446655440002",
            "bill_amount": 1000.00,
            "bill_date": "2026-10-01",
            "receipt_url": "https://cdn.example.com/receipts/abc.jpg"
        }
    })

    @field_validator("bill_amount")
    @classmethod
    def _quantize_bill(cls, v: Decimal) -> Decimal:
        return to_coins(v)


class SubmitRedeemRequest(SubmitEarnRequest):
    coins_to_redeem: Decimal = Field(..., gt=0, le=MAX_AMOUNT)

    @field_validator("coins_to_redeem")
    @classmethod
    def _quantize_coins(cls, v: Decimal) -> Decimal:
        return to_coins(v)


class ApproveRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)
    admin_notes: Optional[str] = None


class RejectRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)
    reason: str = Field(..., description="Reason for rejection")
    admin_notes: Optional[str] = None


class ProcessPaymentRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)
    external_payment_ref: str = Field(..., max_length=100, description="Payment reference from the payout provider")
    admin_notes: Optional[str] = None


class AdjustmentRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=-MAX_AMOUNT, le=MAX_AMOUNT)
    reason: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)


class SubmissionResponse(BaseModel):
    transaction_id: UUID
    status: TransactionStatus
    new_balance: Decimal
    transaction: CoinTransaction


class DecisionResponse(BaseModel):
    transaction_id: UUID
    status: TransactionStatus
    new_balance: Optional[Decimal] = None
    transaction: CoinTransaction
    message: str


class WelcomeBonusResponse(BaseModel):
    transaction_id: UUID
    coins_awarded: Decimal
    new_balance: Decimal
    message: str


class BalanceResponse(BaseModel):
    user_id: UUID
    balance: Decimal
    total_earned: Decimal
    total_redeemed: Decimal
    last_updated: Optional[datetime] = None


class BalanceSummary(BalanceResponse):
    pending_earn_requests: int
    pending_redeem_requests: int


class TransactionStats(BaseModel):
    pending_earn: int
    pending_redeem: int
    total_earned: Decimal
    total_redeemed: Decimal
    total_balance: Decimal


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal

"""
Brand-level earning and redemption caps.

``check_earn_admissible`` and ``check_redeem_admissible`` are pure. The
cumulative ``overall_max_cap`` check reads every live transaction of the
brand, so it must run under the brand's lock in the same unit of work as the
insert it guards.
"""

import logging
from decimal import Decimal
from uuid import UUID

from .errors import CapExceededError, InsufficientBalanceError, ValidationError
from .models import Brand, TransactionStatus, TransactionType, percentage_of, to_coins
from .storage import UnitOfWork

logger = logging.getLogger(__name__)

# Statuses whose coins count against a brand's cumulative cap
EXPOSED_STATUSES = frozenset({
    TransactionStatus.PENDING,
    TransactionStatus.APPROVED,
    TransactionStatus.PROCESSED,
    TransactionStatus.PAID,
})


def brand_lock_key(brand_id: UUID) -> str:
    return f"brand:{brand_id}"


def _require_active(brand: Brand) -> None:
    if not brand.is_active:
        raise ValidationError(f"Brand {brand.name} is not active")


def check_earn_admissible(brand: Brand, bill_amount: Decimal) -> Decimal:
    """Coins a bill earns at this brand."""
    _require_active(brand)
    coins_earned = percentage_of(bill_amount, brand.earning_percentage)
    if coins_earned <= 0:
        raise ValidationError(
            f"Bill amount {bill_amount} earns no coins at {brand.earning_percentage}% for brand {brand.name}"
        )
    return coins_earned


def max_redeemable(brand: Brand, bill_amount: Decimal) -> Decimal:
    return min(to_coins(brand.brandwise_max_cap), percentage_of(bill_amount, brand.redemption_percentage))


def check_redeem_admissible(
    brand: Brand,
    bill_amount: Decimal,
    coins_to_redeem: Decimal,
    user_balance: Decimal,
) -> None:
    _require_active(brand)
    coins_to_redeem = to_coins(coins_to_redeem)
    if coins_to_redeem <= 0:
        raise ValidationError("Coins to redeem must be greater than zero")

    if bill_amount < brand.min_redemption_amount:
        raise CapExceededError(
            f"Bill amount {bill_amount} is below the minimum redemption amount {brand.min_redemption_amount}",
            limit=brand.min_redemption_amount,
            requested=bill_amount,
        )

    ceiling = max_redeemable(brand, bill_amount)
    if coins_to_redeem > ceiling:
        raise CapExceededError(
            f"Maximum redemption for this bill is {ceiling} coins "
            f"({brand.redemption_percentage}% of bill, capped at {brand.brandwise_max_cap})",
            limit=ceiling,
            requested=coins_to_redeem,
        )

    if coins_to_redeem > user_balance:
        raise InsufficientBalanceError(None, user_balance, coins_to_redeem)


class BrandCapEnforcer:
    def check_overall_cap(
        self,
        uow: UnitOfWork,
        brand: Brand,
        type: TransactionType,
        coins: Decimal,
    ) -> Decimal:
        """Lock the brand and verify ``coins`` more of ``type`` fit under its cumulative cap.

        Returns the brand's exposure before this claim.
        """
        uow.lock(brand_lock_key(brand.id))
        exposure = self.exposure(uow, brand.id, type)
        if brand.overall_max_cap is None:
            return exposure

        if exposure + coins > brand.overall_max_cap:
            logger.warning(
                "Brand %s overall %s cap reached: %s + %s > %s",
                brand.id, type.value, exposure, coins, brand.overall_max_cap,
            )
            raise CapExceededError(
                f"Brand {brand.name} has reached its overall {type.value.lower()} cap "
                f"({brand.overall_max_cap} coins)",
                limit=brand.overall_max_cap,
                requested=exposure + coins,
            )
        return exposure

    @staticmethod
    def exposure(uow: UnitOfWork, brand_id: UUID, type: TransactionType) -> Decimal:
        rows = uow.find_transactions(
            lambda t: t["brand_id"] == brand_id and t["type"] == type and t["status"] in EXPOSED_STATUSES
        )
        return to_coins(sum((r["amount"] for r in rows), Decimal("0")))

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from coin_ledger.models import SubmitEarnRequest, SubmitRedeemRequest


FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
TODAY = FIXED_NOW.date()

USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_USER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
INACTIVE_USER_ID = UUID("880e8400-e29b-41d4-a716-446655440003")

BRAND_ID = UUID("11111111-1111-1111-1111-111111111111")
CAPPED_BRAND_ID = UUID("22222222-2222-2222-2222-222222222222")
INACTIVE_BRAND_ID = UUID("33333333-3333-3333-3333-333333333333")

ADMIN = "admin@corra.test"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def earn_request(bill_amount="1000.00", brand_id=BRAND_ID, bill_date: date = TODAY) -> SubmitEarnRequest:
    return SubmitEarnRequest(
        brand_id=brand_id,
        bill_amount=Decimal(bill_amount),
        bill_date=bill_date,
        receipt_url="https://cdn.corra.test/receipts/r1.jpg",
    )


def redeem_request(coins, bill_amount="500.00", brand_id=BRAND_ID, bill_date: date = TODAY) -> SubmitRedeemRequest:
    return SubmitRedeemRequest(
        brand_id=brand_id,
        bill_amount=Decimal(bill_amount),
        bill_date=bill_date,
        coins_to_redeem=Decimal(str(coins)),
    )

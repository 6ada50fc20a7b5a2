from decimal import Decimal

import pytest

from coin_ledger.config import LedgerConfig
from coin_ledger.models import Brand, User, UserStatus
from coin_ledger.service import CoinLedgerService
from coin_ledger.storage import InMemoryStorage
from coin_ledger.tests.helpers import (
    BRAND_ID,
    CAPPED_BRAND_ID,
    FIXED_NOW,
    INACTIVE_BRAND_ID,
    INACTIVE_USER_ID,
    OTHER_USER_ID,
    USER_ID,
    FakeClock,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(FIXED_NOW)


@pytest.fixture
def storage() -> InMemoryStorage:
    storage = InMemoryStorage(seed=False)
    storage.add_user(User(id=USER_ID, mobile_number="9000000001"))
    storage.add_user(User(id=OTHER_USER_ID, mobile_number="9000000002"))
    storage.add_user(User(id=INACTIVE_USER_ID, mobile_number="9000000003", status=UserStatus.SUSPENDED))
    storage.add_brand(Brand(
        id=BRAND_ID, name="Corra Cafe",
        earning_percentage=Decimal("30"), redemption_percentage=Decimal("100"),
        min_redemption_amount=Decimal("1"), brandwise_max_cap=Decimal("2000"),
    ))
    storage.add_brand(Brand(
        id=CAPPED_BRAND_ID, name="Capped Mart",
        earning_percentage=Decimal("10"), redemption_percentage=Decimal("30"),
        min_redemption_amount=Decimal("20"), brandwise_max_cap=Decimal("50"),
        overall_max_cap=Decimal("150"),
    ))
    storage.add_brand(Brand(id=INACTIVE_BRAND_ID, name="Closed Store", is_active=False))
    return storage


@pytest.fixture
def config() -> LedgerConfig:
    # Fraud window off so a test can submit several claims at the same instant
    return LedgerConfig(version="test", min_minutes_between_submissions=0)


@pytest.fixture
def service(storage, config, clock) -> CoinLedgerService:
    return CoinLedgerService(storage=storage, config=config, clock=clock)

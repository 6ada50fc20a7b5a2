"""
Unit Tests for Submission Rules

Tests cover:
1. Bill amount and bill date checks
2. Maximum pending requests per user
3. Minimum time between EARN submissions to the same brand
4. Optional redeem block while earn requests are pending
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from coin_ledger.config import LedgerConfig
from coin_ledger.errors import ValidationError
from coin_ledger.models import ApproveRequest, TransactionStatus
from coin_ledger.validation import validate_bill, validate_payment_reference, validate_rejection_reason
from coin_ledger.tests.helpers import ADMIN, CAPPED_BRAND_ID, TODAY, USER_ID, earn_request, redeem_request


class TestBillChecks:
    """Tests for bill amount and date rules."""

    def test_valid_bill(self):
        validate_bill(Decimal("100.00"), TODAY, LedgerConfig(), TODAY)

    def test_below_minimum_bill(self):
        with pytest.raises(ValidationError, match="at least 100"):
            validate_bill(Decimal("99.99"), TODAY, LedgerConfig(), TODAY)

    def test_future_bill_date(self):
        with pytest.raises(ValidationError, match="future"):
            validate_bill(Decimal("500.00"), TODAY + timedelta(days=1), LedgerConfig(), TODAY)

    def test_oldest_allowed_bill(self):
        validate_bill(Decimal("500.00"), TODAY - timedelta(days=30), LedgerConfig(), TODAY)

    def test_bill_too_old(self):
        with pytest.raises(ValidationError, match="too old"):
            validate_bill(Decimal("500.00"), TODAY - timedelta(days=31), LedgerConfig(), TODAY)

    def test_custom_limits(self):
        config = LedgerConfig(min_bill_amount=Decimal("10"), max_bill_age_days=7)
        validate_bill(Decimal("10.00"), TODAY - timedelta(days=7), config, TODAY)
        with pytest.raises(ValidationError):
            validate_bill(Decimal("10.00"), TODAY - timedelta(days=8), config, TODAY)

    def test_service_rejects_old_bill(self, service):
        with pytest.raises(ValidationError):
            service.submit_earn(USER_ID, earn_request(bill_date=TODAY - timedelta(days=45)))


class TestAdminInputChecks:
    def test_rejection_reason_is_trimmed(self):
        assert validate_rejection_reason("  Blurry receipt ") == "Blurry receipt"

    def test_blank_payment_reference(self):
        with pytest.raises(ValidationError):
            validate_payment_reference("")

    def test_payment_reference_is_trimmed(self):
        assert validate_payment_reference(" UPI-42 ") == "UPI-42"


class TestPendingLimit:
    """Tests for the maximum number of pending requests per user."""

    def test_sixth_pending_request_fails(self, service):
        for _ in range(5):
            service.submit_earn(USER_ID, earn_request("100.00"))

        with pytest.raises(ValidationError, match="pending requests"):
            service.submit_earn(USER_ID, earn_request("100.00"))
        with pytest.raises(ValidationError, match="pending requests"):
            service.submit_redeem(USER_ID, redeem_request(10))

        assert service.get_balance_summary(USER_ID).pending_earn_requests == 5

    def test_approval_frees_a_slot(self, service):
        first = service.submit_earn(USER_ID, earn_request("100.00"))
        for _ in range(4):
            service.submit_earn(USER_ID, earn_request("100.00"))
        service.approve(first.transaction_id, ApproveRequest(admin_id=ADMIN))

        response = service.submit_earn(USER_ID, earn_request("100.00"))

        assert response.status == TransactionStatus.PENDING


class TestSubmissionWindow:
    """Tests for the minimum time between EARN submissions to one brand."""

    @pytest.fixture
    def windowed(self) -> LedgerConfig:
        return LedgerConfig(version="windowed", min_minutes_between_submissions=5)

    def test_resubmission_inside_window_fails(self, service, windowed):
        service.submit_earn(USER_ID, earn_request(), config=windowed)

        with pytest.raises(ValidationError, match="Please wait 5 minutes"):
            service.submit_earn(USER_ID, earn_request(), config=windowed)

        assert service.get_balance(USER_ID).balance == Decimal("300.00")

    def test_wait_shrinks_as_time_passes(self, service, clock, windowed):
        service.submit_earn(USER_ID, earn_request(), config=windowed)
        clock.advance(minutes=3)

        with pytest.raises(ValidationError, match="Please wait 2 minutes"):
            service.submit_earn(USER_ID, earn_request(), config=windowed)

    def test_resubmission_after_window_passes(self, service, clock, windowed):
        service.submit_earn(USER_ID, earn_request(), config=windowed)
        clock.advance(minutes=6)

        response = service.submit_earn(USER_ID, earn_request(), config=windowed)

        assert response.new_balance == Decimal("600.00")

    def test_other_brand_is_not_throttled(self, service, windowed):
        service.submit_earn(USER_ID, earn_request(), config=windowed)

        response = service.submit_earn(USER_ID, earn_request(brand_id=CAPPED_BRAND_ID), config=windowed)

        assert response.transaction.brand_id == CAPPED_BRAND_ID

    def test_reviewed_claims_do_not_throttle(self, service, windowed):
        first = service.submit_earn(USER_ID, earn_request(), config=windowed)
        service.approve(first.transaction_id, ApproveRequest(admin_id=ADMIN))

        service.submit_earn(USER_ID, earn_request(), config=windowed)

    def test_redeem_is_not_throttled(self, service, windowed):
        service.submit_earn(USER_ID, earn_request(), config=windowed)

        service.submit_redeem(USER_ID, redeem_request(100), config=windowed)
        service.submit_redeem(USER_ID, redeem_request(100), config=windowed)

        assert service.get_balance(USER_ID).balance == Decimal("100.00")


class TestRedeemWithPendingEarn:
    """Tests for the optional block on redeeming while earn claims are pending."""

    @pytest.fixture
    def blocking(self) -> LedgerConfig:
        return LedgerConfig(
            version="blocking", min_minutes_between_submissions=0, block_redeem_with_pending_earn=True,
        )

    def test_blocked_while_earn_pending(self, service, blocking):
        service.submit_earn(USER_ID, earn_request(), config=blocking)

        with pytest.raises(ValidationError, match="pending earn requests"):
            service.submit_redeem(USER_ID, redeem_request(50), config=blocking)

    def test_allowed_after_earn_approved(self, service, blocking):
        earn = service.submit_earn(USER_ID, earn_request(), config=blocking)
        service.approve(earn.transaction_id, ApproveRequest(admin_id=ADMIN))

        response = service.submit_redeem(USER_ID, redeem_request(50), config=blocking)

        assert response.new_balance == Decimal("250.00")

    def test_not_blocked_by_default(self, service):
        service.submit_earn(USER_ID, earn_request())

        service.submit_redeem(USER_ID, redeem_request(50))

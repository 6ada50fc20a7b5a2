"""
Concurrency Tests for the Coin Ledger

Each test releases its workers together through a ``threading.Barrier`` so
the operations genuinely race for the same locks.

Tests cover:
1. Racing redeems against one balance
2. Racing welcome bonus requests
3. Racing admin decisions on one transaction
4. Racing claims against a brand's cumulative cap
5. Lock timeouts surfacing as retryable conflicts
"""

import threading
from decimal import Decimal

import pytest

from coin_ledger.balance import user_lock_key
from coin_ledger.config import LedgerConfig
from coin_ledger.errors import (
    CapExceededError,
    ConcurrencyConflict,
    DuplicateWelcomeBonusError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    ValidationError,
)
from coin_ledger.models import (
    AdjustmentRequest,
    ApproveRequest,
    ProcessPaymentRequest,
    RejectRequest,
    TransactionStatus,
)
from coin_ledger.tests.helpers import ADMIN, CAPPED_BRAND_ID, OTHER_USER_ID, USER_ID, earn_request, redeem_request


def run_concurrently(*calls):
    """Run each callable in its own thread and return its result or the exception it raised."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def worker(index, call):
        barrier.wait()
        try:
            results[index] = call()
        except Exception as e:
            results[index] = e

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return results


def split(results):
    errors = [r for r in results if isinstance(r, Exception)]
    successes = [r for r in results if not isinstance(r, Exception)]
    return successes, errors


class TestRacingBalanceUpdates:
    """Tests for concurrent writers on one balance."""

    def test_two_redeems_cannot_overdraw(self, service):
        """Balance 100 and two redeems of 60: exactly one wins."""
        service.issue_welcome_bonus(USER_ID)

        successes, errors = split(run_concurrently(
            lambda: service.submit_redeem(USER_ID, redeem_request(60)),
            lambda: service.submit_redeem(USER_ID, redeem_request(60)),
        ))

        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InsufficientBalanceError)
        balance = service.get_balance(USER_ID)
        assert balance.balance == Decimal("40.00")
        assert balance.total_redeemed == Decimal("60.00")

    def test_parallel_adjustments_all_apply(self, service):
        request = AdjustmentRequest(admin_id=ADMIN, amount=Decimal("10"), reason="Campaign credit")

        successes, errors = split(run_concurrently(*[lambda: service.adjust(USER_ID, request)] * 10))

        assert errors == []
        assert len(successes) == 10
        balance = service.get_balance(USER_ID)
        assert balance.balance == Decimal("100.00")
        assert balance.balance == balance.total_earned - balance.total_redeemed
        history = service.get_ledger_history(USER_ID)
        assert history.total_count == 10
        assert sorted(e.balance_after for e in history.entries) == [Decimal(10 * i) for i in range(1, 11)]


class TestRacingWelcomeBonus:
    def test_bonus_credited_once(self, service):
        successes, errors = split(run_concurrently(*[lambda: service.issue_welcome_bonus(USER_ID)] * 8))

        assert len(successes) == 1
        assert len(errors) == 7
        assert all(isinstance(e, DuplicateWelcomeBonusError) for e in errors)
        assert service.get_balance(USER_ID).balance == Decimal("100.00")


class TestRacingDecisions:
    """Tests for concurrent admin actions on one transaction."""

    def test_approve_and_reject_race(self, service):
        earn = service.submit_earn(USER_ID, earn_request("1000.00"))

        successes, errors = split(run_concurrently(
            lambda: service.approve(earn.transaction_id, ApproveRequest(admin_id="admin-a")),
            lambda: service.reject(earn.transaction_id, RejectRequest(admin_id="admin-b", reason="Fake")),
        ))

        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateTransitionError)

        final = service.get_transaction(earn.transaction_id)
        assert final.status == successes[0].status
        expected_balance = Decimal("300.00") if final.status == TransactionStatus.APPROVED else Decimal("0.00")
        assert service.get_balance(USER_ID).balance == expected_balance

    def test_same_payment_reference_race(self, service):
        service.issue_welcome_bonus(USER_ID)
        first = service.submit_redeem(USER_ID, redeem_request(10))
        second = service.submit_redeem(USER_ID, redeem_request(10))
        for txn in (first, second):
            service.approve(txn.transaction_id, ApproveRequest(admin_id=ADMIN))

        successes, errors = split(run_concurrently(
            lambda: service.process_payment(
                first.transaction_id, ProcessPaymentRequest(admin_id=ADMIN, external_payment_ref="UPI-RACE")
            ),
            lambda: service.process_payment(
                second.transaction_id, ProcessPaymentRequest(admin_id=ADMIN, external_payment_ref="UPI-RACE")
            ),
        ))

        assert len(successes) == 1
        assert isinstance(errors[0], ValidationError)
        statuses = {service.get_transaction(t.transaction_id).status for t in (first, second)}
        assert statuses == {TransactionStatus.PAID, TransactionStatus.APPROVED}


class TestRacingBrandCap:
    def test_cumulative_cap_is_not_overshot(self, service):
        """Two claims of 100 coins against a cap of 150 from different users."""
        successes, errors = split(run_concurrently(
            lambda: service.submit_earn(USER_ID, earn_request("1000.00", brand_id=CAPPED_BRAND_ID)),
            lambda: service.submit_earn(OTHER_USER_ID, earn_request("1000.00", brand_id=CAPPED_BRAND_ID)),
        ))

        assert len(successes) == 1
        assert isinstance(errors[0], CapExceededError)
        total = service.get_balance(USER_ID).balance + service.get_balance(OTHER_USER_ID).balance
        assert total == Decimal("100.00")


class TestLockTimeout:
    """Tests for lock acquisition timeouts."""

    @pytest.fixture
    def impatient(self) -> LedgerConfig:
        return LedgerConfig(version="impatient", min_minutes_between_submissions=0, lock_timeout_seconds=0.05)

    def test_timeout_raises_retryable_conflict(self, service, storage, impatient):
        with storage.unit_of_work(1.0) as blocker:
            blocker.lock(user_lock_key(USER_ID))

            with pytest.raises(ConcurrencyConflict) as exc_info:
                service.submit_earn(USER_ID, earn_request(), config=impatient)

        assert exc_info.value.retryable is True
        assert exc_info.value.lock_key == user_lock_key(USER_ID)
        assert service.get_balance(USER_ID).balance == Decimal("0")
        assert storage.transactions == {}

    def test_retry_succeeds_after_release(self, service, storage, impatient):
        with storage.unit_of_work(1.0) as blocker:
            blocker.lock(user_lock_key(USER_ID))
            with pytest.raises(ConcurrencyConflict):
                service.adjust(
                    USER_ID, AdjustmentRequest(admin_id=ADMIN, amount=Decimal("5"), reason="Retry"), config=impatient
                )

        response = service.adjust(
            USER_ID, AdjustmentRequest(admin_id=ADMIN, amount=Decimal("5"), reason="Retry"), config=impatient
        )

        assert response.new_balance == Decimal("5.00")


class TestLockRegistry:
    """Tests that named lock entries live only while held or awaited."""

    def test_registry_empty_after_many_cycles(self, service, storage):
        for _ in range(50):
            earn = service.submit_earn(USER_ID, earn_request("100.00"))
            service.approve(earn.transaction_id, ApproveRequest(admin_id=ADMIN))

        assert storage.lock_count() == 0

    def test_payment_reference_locks_released(self, service, storage):
        service.issue_welcome_bonus(USER_ID)
        for n in range(5):
            redeem = service.submit_redeem(USER_ID, redeem_request(10))
            service.approve(redeem.transaction_id, ApproveRequest(admin_id=ADMIN))
            service.process_payment(
                redeem.transaction_id, ProcessPaymentRequest(admin_id=ADMIN, external_payment_ref=f"UPI-{n}")
            )

        assert storage.lock_count() == 0

    def test_failed_waiter_keeps_holder_entry(self, storage):
        key = user_lock_key(USER_ID)
        with storage.unit_of_work(1.0) as holder:
            holder.lock(key)

            with pytest.raises(ConcurrencyConflict):
                with storage.unit_of_work(0.05) as waiter:
                    waiter.lock(key)

            assert storage.lock_count() == 1
            assert holder.holds(key)

        assert storage.lock_count() == 0
        with storage.unit_of_work(0.05) as again:
            again.lock(key)

    def test_registry_empty_after_races(self, service, storage):
        service.issue_welcome_bonus(USER_ID)

        run_concurrently(*[lambda: service.submit_redeem(USER_ID, redeem_request(30))] * 5)

        assert storage.lock_count() == 0
        assert service.get_balance(USER_ID).balance == Decimal("10.00")

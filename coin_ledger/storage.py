"""
In-process storage for balances, transactions and the ledger journal.

Rows are plain dicts keyed by id. Mutations go through a ``UnitOfWork``:
named exclusive locks serialize writers, writes are staged privately and
published together on commit, so readers never observe a half-applied
operation.

Lock keys are acquired in the order ``txn:`` -> ``payref:`` -> ``user:`` ->
``brand:`` by every caller. A lock entry is dropped from the registry once
no unit of work holds or waits on it.
"""

import copy
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from .errors import BrandNotFoundError, ConcurrencyConflict, UserNotFoundError
from .models import Brand, User, UserStatus

logger = logging.getLogger(__name__)

DEMO_USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_BRAND_ID = UUID("770e8400-e29b-41d4-a716-446655440002")


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class InMemoryStorage:
    def __init__(self, seed: bool = True):
        self.users: dict[UUID, dict] = {}
        self.brands: dict[UUID, dict] = {}
        self.coin_balances: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.payment_refs: dict[str, UUID] = {}
        self._commit_lock = threading.RLock()
        self._registry_lock = threading.Lock()
        self._locks: dict[str, _LockEntry] = {}
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.add_user(User(id=DEMO_USER_ID, mobile_number="9876543210", status=UserStatus.ACTIVE))
        self.add_brand(Brand(
            id=DEMO_BRAND_ID, name="Demo Brand",
            earning_percentage=Decimal("30"), redemption_percentage=Decimal("100"),
            min_redemption_amount=Decimal("1"), brandwise_max_cap=Decimal("2000"),
        ))

    def add_user(self, user: User) -> User:
        with self._commit_lock:
            self.users[user.id] = user.model_dump()
        return user

    def add_brand(self, brand: Brand) -> Brand:
        with self._commit_lock:
            self.brands[brand.id] = brand.model_dump()
        return brand

    def get_user(self, user_id: UUID) -> User:
        with self._commit_lock:
            row = self.users.get(user_id)
        if row is None:
            raise UserNotFoundError(user_id)
        return User(**row)

    def get_brand(self, brand_id: UUID) -> Brand:
        with self._commit_lock:
            row = self.brands.get(brand_id)
        if row is None:
            raise BrandNotFoundError(brand_id)
        return Brand(**row)

    def get_balance_row(self, user_id: UUID) -> Optional[dict]:
        with self._commit_lock:
            row = self.coin_balances.get(user_id)
            return copy.deepcopy(row) if row is not None else None

    def get_transaction_row(self, transaction_id: UUID) -> Optional[dict]:
        with self._commit_lock:
            row = self.transactions.get(transaction_id)
            return copy.deepcopy(row) if row is not None else None

    def find_transactions(self, predicate: Callable[[dict], bool]) -> list[dict]:
        with self._commit_lock:
            return [copy.deepcopy(t) for t in self.transactions.values() if predicate(t)]

    def entries_for(self, user_id: UUID) -> list[dict]:
        with self._commit_lock:
            return [copy.deepcopy(e) for e in self.ledger_entries.values() if e["user_id"] == user_id]

    def all_balances(self) -> list[dict]:
        with self._commit_lock:
            return [copy.deepcopy(b) for b in self.coin_balances.values()]

    def acquire_lock(self, key: str, timeout: float) -> bool:
        """Acquire the named lock, creating it on first use."""
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.users += 1
        if entry.lock.acquire(timeout=timeout):
            return True
        with self._registry_lock:
            self._forget(key, entry)
        return False

    def release_lock(self, key: str) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry.lock.release()
            self._forget(key, entry)

    def lock_count(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _forget(self, key: str, entry: _LockEntry) -> None:
        # Entries live only while someone holds or waits on them
        entry.users -= 1
        if entry.users == 0:
            del self._locks[key]

    def unit_of_work(self, lock_timeout: float) -> "UnitOfWork":
        return UnitOfWork(self, lock_timeout)


class UnitOfWork:
    """Atomic unit of work over ``InMemoryStorage``.

    Commits on a clean exit from the ``with`` block and discards every staged
    write when the block raises. Locks are released only after the commit is
    published.
    """

    def __init__(self, storage: InMemoryStorage, lock_timeout: float):
        self.storage = storage
        self.lock_timeout = lock_timeout
        self._held: list[str] = []
        self._balances: dict[UUID, dict] = {}
        self._transactions: dict[UUID, dict] = {}
        self._users: dict[UUID, dict] = {}
        self._entries: list[dict] = []
        self._payment_refs: dict[str, UUID] = {}
        self.committed_at: Optional[datetime] = None

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self.commit()
            elif self._has_writes():
                logger.warning(
                    "Rolling back unit of work: %s",
                    getattr(exc, "code", exc_type.__name__),
                )
        finally:
            self._release()

    def lock(self, key: str) -> None:
        if self.holds(key):
            return
        if not self.storage.acquire_lock(key, self.lock_timeout):
            logger.warning("Lock %s not acquired within %ss", key, self.lock_timeout)
            raise ConcurrencyConflict(key, self.lock_timeout)
        self._held.append(key)

    def holds(self, key: str) -> bool:
        return key in self._held

    def balance_row(self, user_id: UUID) -> Optional[dict]:
        if user_id in self._balances:
            return copy.deepcopy(self._balances[user_id])
        return self.storage.get_balance_row(user_id)

    def put_balance(self, row: dict) -> None:
        self._balances[row["user_id"]] = copy.deepcopy(row)

    def transaction_row(self, transaction_id: UUID) -> Optional[dict]:
        if transaction_id in self._transactions:
            return copy.deepcopy(self._transactions[transaction_id])
        return self.storage.get_transaction_row(transaction_id)

    def put_transaction(self, row: dict) -> None:
        self._transactions[row["id"]] = copy.deepcopy(row)

    def find_transactions(self, predicate: Callable[[dict], bool]) -> list[dict]:
        committed = {t["id"]: t for t in self.storage.find_transactions(lambda _: True)}
        committed.update(copy.deepcopy(self._transactions))
        return [t for t in committed.values() if predicate(t)]

    def user_row(self, user_id: UUID) -> dict:
        if user_id in self._users:
            return copy.deepcopy(self._users[user_id])
        return self.storage.get_user(user_id).model_dump()

    def put_user(self, row: dict) -> None:
        self._users[row["id"]] = copy.deepcopy(row)

    def add_entry(self, entry: dict) -> None:
        self._entries.append(copy.deepcopy(entry))

    def find_entries(self, user_id: UUID, predicate: Callable[[dict], bool]) -> list[dict]:
        staged = [copy.deepcopy(e) for e in self._entries if e["user_id"] == user_id]
        return [e for e in self.storage.entries_for(user_id) + staged if predicate(e)]

    def payment_ref_owner(self, reference: str) -> Optional[UUID]:
        if reference in self._payment_refs:
            return self._payment_refs[reference]
        with self.storage._commit_lock:
            return self.storage.payment_refs.get(reference)

    def claim_payment_ref(self, reference: str, transaction_id: UUID) -> None:
        self._payment_refs[reference] = transaction_id

    def commit(self) -> None:
        if self.committed_at is not None:
            return
        storage = self.storage
        with storage._commit_lock:
            storage.coin_balances.update(self._balances)
            storage.transactions.update(self._transactions)
            storage.users.update(self._users)
            for entry in self._entries:
                storage.ledger_entries[entry["id"]] = entry
            storage.payment_refs.update(self._payment_refs)
        self.committed_at = datetime.now(timezone.utc)

    def _has_writes(self) -> bool:
        return bool(self._balances or self._transactions or self._users or self._entries or self._payment_refs)

    def _release(self) -> None:
        while self._held:
            self.storage.release_lock(self._held.pop())

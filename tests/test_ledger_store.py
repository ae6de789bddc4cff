"""Ledger store against the in-memory backend."""

import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import (
    BadRequestError,
    CommitFailedError,
    InsufficientCreditsError,
    NotFoundError,
)
from app.core.retry import RetryPolicy, fixed_backoff
from app.services.ledger import LedgerStore
from app.store.base import TransientStoreError
from app.store.memory import MemoryMeteringStore
from app.store.types import TransactionKind, TransactionQuery, TransactionReason, UsageRecord

pytestmark = pytest.mark.asyncio


class FlakyStore(MemoryMeteringStore):
    """Fails the first `failures` transaction writes with a transient error."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.writes = 0

    async def _write_transaction(self, tx):
        self.writes += 1
        if self.writes <= self.failures:
            raise TransientStoreError("write conflict")
        await super()._write_transaction(tx)


class SlowOnceStore(MemoryMeteringStore):
    def __init__(self) -> None:
        super().__init__()
        self.slow = True

    async def _write_transaction(self, tx):
        if self.slow:
            self.slow = False
            await asyncio.sleep(1)
        await super()._write_transaction(tx)


class StallingUsageStore(MemoryMeteringStore):
    """Hangs on the first `stalls` usage appends."""

    def __init__(self, stalls: int) -> None:
        super().__init__()
        self.stalls = stalls

    async def append_usage(self, usage):
        if self.stalls:
            self.stalls -= 1
            await asyncio.sleep(1)
        await super().append_usage(usage)


def make_ledger(store, sleeps, timeout=2.0) -> LedgerStore:
    policy = RetryPolicy(max_attempts=3, backoff=fixed_backoff(0.2), retry_on=(TransientStoreError,), sleep=sleeps)
    return LedgerStore(store, policy, timeout=timeout)


async def all_transactions(store, account_id):
    items, _ = await store.list_transactions(account_id, TransactionQuery(descending=False, limit=1000))
    return items


def usage_for(account_id: str, cost: int) -> UsageRecord:
    return UsageRecord(account_id=account_id, operation="op", status_code=200, latency_ms=5.0, credits_charged=cost)


async def test_credit_and_debit_chain(store, sleeps):
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    assert await ledger.credit(account.id, 10, TransactionReason.PURCHASE) == 10
    assert await ledger.debit(account.id, 3, TransactionReason.API_USAGE) == 7
    assert await ledger.credit(account.id, 5, TransactionReason.REFUND) == 12
    txs = await all_transactions(store, account.id)
    assert [t.seq for t in txs] == [1, 2, 3]
    assert [t.resulting_balance for t in txs] == [10, 7, 12]
    assert [t.kind for t in txs] == [TransactionKind.CREDIT, TransactionKind.DEBIT, TransactionKind.CREDIT]
    assert await ledger.get_balance(account.id) == 12


async def test_debit_fails_closed(store, sleeps):
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    await ledger.credit(account.id, 2, TransactionReason.BONUS)
    with pytest.raises(InsufficientCreditsError) as exc_info:
        await ledger.debit(account.id, 3, TransactionReason.API_USAGE)
    assert exc_info.value.details == {"required": 3, "available": 2}
    assert await ledger.get_balance(account.id) == 2
    assert len(await all_transactions(store, account.id)) == 1
    # Not a transient failure: no retries
    assert sleeps.calls == []


async def test_credit_idempotency_key_applies_once(store, sleeps):
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    first = await ledger.post_credit(account.id, 50, TransactionReason.PURCHASE, idempotency_key="order-1")
    second = await ledger.post_credit(account.id, 50, TransactionReason.PURCHASE, idempotency_key="order-1")
    assert first.id == second.id
    assert await ledger.get_balance(account.id) == 50
    assert len(await all_transactions(store, account.id)) == 1

    await ledger.debit(account.id, 20, TransactionReason.SUBSCRIPTION)
    assert await ledger.credit(account.id, 50, TransactionReason.PURCHASE, idempotency_key="order-1") == 30


async def test_rejects_invalid_amounts_and_reasons(store, sleeps):
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    for amount in (0, -5):
        with pytest.raises(BadRequestError):
            await ledger.credit(account.id, amount, TransactionReason.BONUS)
    with pytest.raises(BadRequestError):
        await ledger.credit(account.id, 5, TransactionReason.API_USAGE)
    with pytest.raises(BadRequestError):
        await ledger.debit(account.id, 5, TransactionReason.PURCHASE)
    assert await all_transactions(store, account.id) == []


async def test_unknown_account(store, sleeps):
    ledger = make_ledger(store, sleeps)
    with pytest.raises(NotFoundError):
        await ledger.credit("missing", 5, TransactionReason.BONUS)
    with pytest.raises(NotFoundError):
        await ledger.get_balance("missing")


async def test_concurrent_debits_serialize(store, sleeps):
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    await ledger.credit(account.id, 10, TransactionReason.BONUS)

    results = await asyncio.gather(
        *[ledger.debit(account.id, 1, TransactionReason.API_USAGE) for _ in range(25)],
        return_exceptions=True,
    )
    succeeded = [r for r in results if isinstance(r, int)]
    failed = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(succeeded) == 10
    assert len(failed) == 15
    assert sorted(succeeded) == list(range(10))

    txs = await all_transactions(store, account.id)
    assert [t.seq for t in txs] == list(range(1, 12))
    running = 0
    for t in txs:
        running += t.amount if t.kind == TransactionKind.CREDIT else -t.amount
        assert t.resulting_balance == running
    assert await ledger.get_balance(account.id) == txs[-1].resulting_balance == 0


async def test_commit_charge_retries_transient_failures(sleeps):
    store = FlakyStore(failures=0)
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    await ledger.credit(account.id, 10, TransactionReason.BONUS)
    store.writes, store.failures = 0, 2

    tx = await ledger.commit_charge(account.id, "op", 4, "charge-1", usage_for(account.id, 4))
    assert tx.resulting_balance == 6
    assert tx.idempotency_key == "charge-1"
    assert tx.metadata["operation"] == "op"
    assert store.writes == 3
    assert sleeps.calls == [0.2, 0.2]
    usage = await store.list_usage(account.id)
    assert [u.credits_charged for u in usage] == [4]


async def test_commit_charge_exhausted_rolls_back(sleeps):
    store = FlakyStore(failures=0)
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    await ledger.credit(account.id, 10, TransactionReason.BONUS)
    store.writes, store.failures = 0, 100

    with pytest.raises(CommitFailedError) as exc_info:
        await ledger.commit_charge(account.id, "op", 4, "charge-1", usage_for(account.id, 4))
    assert exc_info.value.attempts == 3
    assert await ledger.get_balance(account.id) == 10
    assert [t.kind for t in await all_transactions(store, account.id)] == [TransactionKind.CREDIT]
    assert await store.list_usage(account.id) == []


async def test_commit_timeout_is_retried(sleeps):
    store = SlowOnceStore()
    store.slow = False
    ledger = make_ledger(store, sleeps, timeout=0.05)
    account = await store.insert_account("a@example.com")
    await ledger.credit(account.id, 10, TransactionReason.BONUS)
    store.slow = True

    tx = await ledger.commit_charge(account.id, "op", 3, "charge-1", usage_for(account.id, 3))
    assert tx.resulting_balance == 7
    assert sleeps.calls == [0.2]
    assert store.balance_chain(account.id) == [10, 7]


async def test_commit_charge_without_cost_only_logs_usage(store, sleeps):
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    await ledger.credit(account.id, 10, TransactionReason.BONUS)
    assert await ledger.commit_charge(account.id, "free-op", 0, "charge-1", usage_for(account.id, 0)) is None
    assert await ledger.get_balance(account.id) == 10
    assert len(await store.list_usage(account.id)) == 1


async def test_usage_only_commit_is_bounded_by_timeout(sleeps):
    store = StallingUsageStore(stalls=1)
    ledger = make_ledger(store, sleeps, timeout=0.05)
    account = await store.insert_account("a@example.com")
    assert await ledger.commit_charge(account.id, "free-op", 0, "charge-1", usage_for(account.id, 0)) is None
    assert sleeps.calls == [0.2]
    assert len(await store.list_usage(account.id)) == 1

    store.stalls = 100
    with pytest.raises(CommitFailedError) as exc_info:
        await ledger.commit_charge(account.id, "free-op", 0, "charge-2", usage_for(account.id, 0))
    assert exc_info.value.attempts == 3
    assert len(await store.list_usage(account.id)) == 1


async def test_list_transactions_filters_and_pages(store, sleeps):
    ledger = make_ledger(store, sleeps)
    account = await store.insert_account("a@example.com")
    await ledger.credit(account.id, 100, TransactionReason.BONUS)
    for _ in range(5):
        await ledger.debit(account.id, 1, TransactionReason.API_USAGE)

    page = await ledger.list_transactions(account.id, page=1, page_size=4)
    assert page.total == 6
    assert page.total_pages == 2
    assert [t.seq for t in page.items] == [6, 5, 4, 3]

    page2 = await ledger.list_transactions(account.id, page=2, page_size=4)
    assert [t.seq for t in page2.items] == [2, 1]

    debits = await ledger.list_transactions(account.id, kind=TransactionKind.DEBIT, page_size=100, descending=False)
    assert debits.total == 5
    assert [t.resulting_balance for t in debits.items] == [99, 98, 97, 96, 95]

    first = page2.items[-1].created_at
    none_before = await ledger.list_transactions(account.id, end=first - timedelta(seconds=1))
    assert none_before.total == 0

    with pytest.raises(BadRequestError):
        await ledger.list_transactions(account.id, start=first, end=first - timedelta(days=1))

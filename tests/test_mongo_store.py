"""Mongo backend against a real replica set; set MONGODB_TEST_URI to run."""

import asyncio
import os
import uuid

import pytest
import pytest_asyncio

from app.core.retry import RetryPolicy
from app.services.ledger import LedgerStore
from app.store.base import BalanceTooLowError, TransientStoreError
from app.store.types import (
    ConsumeOutcome,
    EntitlementStatus,
    LedgerEntry,
    TransactionKind,
    TransactionQuery,
    TransactionReason,
    UsageRecord,
    utcnow,
)

MONGODB_TEST_URI = os.environ.get("MONGODB_TEST_URI")

pytestmark = [
    pytest.mark.asyncio,
    pytest.mark.skipif(not MONGODB_TEST_URI, reason="MONGODB_TEST_URI not set"),
]


@pytest_asyncio.fixture
async def mongo_store():
    from app.store.mongo import MongoMeteringStore
    db_name = f"meterd_test_{uuid.uuid4().hex[:8]}"
    store = MongoMeteringStore(uri=MONGODB_TEST_URI, db_name=db_name)
    await store.init()
    try:
        yield store
    finally:
        await store.client.drop_database(db_name)
        await store.close()


async def test_debit_is_atomic_with_usage(mongo_store):
    account = await mongo_store.insert_account("m@example.com")
    await mongo_store.apply_entry(
        LedgerEntry(account_id=account.id, kind=TransactionKind.CREDIT, amount=5, reason=TransactionReason.BONUS)
    )
    usage = UsageRecord(account_id=account.id, operation="op", status_code=200, latency_ms=1.0, credits_charged=2)
    tx = await mongo_store.apply_entry(
        LedgerEntry(
            account_id=account.id,
            kind=TransactionKind.DEBIT,
            amount=2,
            reason=TransactionReason.API_USAGE,
            idempotency_key="charge-1",
        ),
        usage,
    )
    assert (tx.seq, tx.resulting_balance) == (2, 3)
    assert len(await mongo_store.list_usage(account.id)) == 1

    again = await mongo_store.apply_entry(
        LedgerEntry(
            account_id=account.id,
            kind=TransactionKind.DEBIT,
            amount=2,
            reason=TransactionReason.API_USAGE,
            idempotency_key="charge-1",
        ),
        usage,
    )
    assert again.id == tx.id
    assert (await mongo_store.get_account(account.id)).balance == 3

    with pytest.raises(BalanceTooLowError):
        await mongo_store.apply_entry(
            LedgerEntry(account_id=account.id, kind=TransactionKind.DEBIT, amount=4, reason=TransactionReason.API_USAGE),
            usage,
        )
    assert len(await mongo_store.list_usage(account.id)) == 1


async def test_concurrent_debits_keep_chain_gapless(mongo_store):
    ledger = LedgerStore(mongo_store, RetryPolicy(max_attempts=10, retry_on=(TransientStoreError,)), timeout=10)
    account = await mongo_store.insert_account("c@example.com")
    await ledger.credit(account.id, 5, TransactionReason.BONUS)
    results = await asyncio.gather(
        *[ledger.debit(account.id, 1, TransactionReason.API_USAGE) for _ in range(8)],
        return_exceptions=True,
    )
    assert sum(isinstance(r, int) for r in results) == 5
    items, total = await mongo_store.list_transactions(account.id, TransactionQuery(descending=False, limit=100))
    assert total == 6
    assert [t.seq for t in items] == list(range(1, 7))
    assert [t.resulting_balance for t in items] == [5, 4, 3, 2, 1, 0]


async def test_entitlement_ceiling(mongo_store):
    account = await mongo_store.insert_account("e@example.com")
    await mongo_store.save_entitlement(account.id, "ocr", EntitlementStatus.ACTIVE, ceilings={"api_calls": 1})
    outcome, ent = await mongo_store.consume_entitlement(account.id, "ocr", "api_calls", utcnow())
    assert outcome == ConsumeOutcome.ADMITTED
    assert ent.limits["api_calls"].used == 1
    outcome, _ = await mongo_store.consume_entitlement(account.id, "ocr", "api_calls", utcnow())
    assert outcome == ConsumeOutcome.LIMIT_EXCEEDED

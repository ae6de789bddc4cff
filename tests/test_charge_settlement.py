"""Settlement after the external work: commit failures and caller cancellation."""

import asyncio

import pytest

from app.core.exceptions import CommitFailedError
from app.services.catalog import DOCUMENT_IDENTIFICATION
from app.services.charging import ExternalResult
from app.store.base import TransientStoreError
from app.store.memory import MemoryMeteringStore
from app.store.types import TransactionKind, TransactionQuery, TransactionReason

pytestmark = pytest.mark.asyncio


class GatedStore(MemoryMeteringStore):
    """Usage debits can be made to fail or to block until released."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_debits = False
        self.hold_debits = False
        self.debit_started = asyncio.Event()
        self.release = asyncio.Event()

    async def _write_transaction(self, tx):
        if tx.reason == TransactionReason.API_USAGE:
            if self.fail_debits:
                raise TransientStoreError("primary stepped down")
            if self.hold_debits:
                self.debit_started.set()
                await self.release.wait()
        await super()._write_transaction(tx)


@pytest.fixture
def store():
    return GatedStore()


async def ok() -> ExternalResult:
    return ExternalResult(data={"card_type": "PAN"})


async def kinds(store, account_id):
    items, _ = await store.list_transactions(account_id, TransactionQuery(descending=False, limit=100))
    return [t.kind for t in items]


async def test_commit_failure_rolls_back_and_reports(gateway, store, make_account, sleeps):
    account = await make_account("a@example.com", 10)
    await gateway.entitlements.subscribe(account.id, DOCUMENT_IDENTIFICATION)
    conn = gateway.hub.register(account.id)
    store.fail_debits = True

    with pytest.raises(CommitFailedError) as exc_info:
        await gateway.coordinator.admit_and_charge(account.id, DOCUMENT_IDENTIFICATION, ok)
    assert exc_info.value.status_code == 503
    assert exc_info.value.code == "COMMIT_FAILED"
    assert exc_info.value.attempts == 3
    assert sleeps.calls == [0.2, 0.2]

    assert await gateway.ledger.get_balance(account.id) == 10
    assert await kinds(store, account.id) == [TransactionKind.CREDIT]
    usage = await store.list_usage(account.id)
    assert [(u.outcome, u.credits_charged, u.status_code) for u in usage] == [("commit_failed", 0, 503)]
    assert conn.queue.empty()


async def test_settlement_survives_caller_cancellation(gateway, store, make_account):
    account = await make_account("a@example.com", 10)
    await gateway.entitlements.subscribe(account.id, DOCUMENT_IDENTIFICATION)
    store.hold_debits = True

    call = asyncio.create_task(
        gateway.coordinator.admit_and_charge(account.id, DOCUMENT_IDENTIFICATION, ok)
    )
    await asyncio.wait_for(store.debit_started.wait(), timeout=1)
    call.cancel()
    with pytest.raises(asyncio.CancelledError):
        await call

    store.release.set()
    await gateway.coordinator.drain()

    assert await gateway.ledger.get_balance(account.id) == 8
    assert await kinds(store, account.id) == [TransactionKind.CREDIT, TransactionKind.DEBIT]
    usage = await store.list_usage(account.id)
    assert [(u.outcome, u.credits_charged) for u in usage] == [("success", 2)]


async def test_cancellation_before_work_completes_charges_nothing(gateway, store, make_account):
    account = await make_account("a@example.com", 10)
    await gateway.entitlements.subscribe(account.id, DOCUMENT_IDENTIFICATION)
    working = asyncio.Event()

    async def slow() -> ExternalResult:
        working.set()
        await asyncio.sleep(10)
        return ExternalResult()

    call = asyncio.create_task(gateway.coordinator.admit_and_charge(account.id, DOCUMENT_IDENTIFICATION, slow))
    await working.wait()
    call.cancel()
    with pytest.raises(asyncio.CancelledError):
        await call
    await gateway.coordinator.drain()

    assert await gateway.ledger.get_balance(account.id) == 10
    assert await kinds(store, account.id) == [TransactionKind.CREDIT]

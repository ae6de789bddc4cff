"""In-process store for single-instance development and tests."""

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime

from app.store.base import AccountNotFoundError, BalanceTooLowError, DuplicateAccountError, MeteringStore
from app.store.types import (
    AccountRecord,
    AuditRecord,
    ConsumeOutcome,
    EntitlementRecord,
    EntitlementStatus,
    LedgerEntry,
    TransactionQuery,
    TransactionRecord,
    UsageLimit,
    UsageRecord,
    utcnow,
)


class MemoryMeteringStore(MeteringStore):
    """Keeps everything in dicts; per-account locks stand in for storage transactions.

    Each lock is held only for the duration of one mutation. Mutations stage
    their records first and publish them together, so a failure while staging
    leaves no trace.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, AccountRecord] = {}
        self._transactions: dict[str, list[TransactionRecord]] = defaultdict(list)
        self._usage: list[UsageRecord] = []
        self._entitlements: dict[tuple[str, str], EntitlementRecord] = {}
        self._audit: list[AuditRecord] = []
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # Accounts

    async def insert_account(self, email: str, name: str = "", role: str = "user") -> AccountRecord:
        if any(a.email == email for a in self._accounts.values()):
            raise DuplicateAccountError(email)
        account = AccountRecord(id=uuid.uuid4().hex, email=email, name=name, role=role)
        self._accounts[account.id] = account
        return account.model_copy()

    async def get_account(self, account_id: str) -> AccountRecord | None:
        account = self._accounts.get(account_id)
        return account.model_copy() if account else None

    async def set_account_disabled(self, account_id: str, disabled: bool) -> AccountRecord | None:
        async with self._locks[account_id]:
            account = self._accounts.get(account_id)
            if not account:
                return None
            account.disabled = disabled
            account.updated_at = utcnow()
            return account.model_copy()

    # Ledger

    async def apply_entry(self, entry: LedgerEntry, usage: UsageRecord | None = None) -> TransactionRecord:
        async with self._locks[entry.account_id]:
            account = self._accounts.get(entry.account_id)
            if not account:
                raise AccountNotFoundError(entry.account_id)
            if entry.idempotency_key:
                existing = self._find(entry.account_id, entry.idempotency_key)
                if existing:
                    return existing.model_copy(deep=True)
            new_balance = account.balance + entry.delta
            if new_balance < 0:
                raise BalanceTooLowError(entry.amount, account.balance)
            now = utcnow()
            tx = TransactionRecord(
                id=uuid.uuid4().hex,
                account_id=entry.account_id,
                seq=account.ledger_seq + 1,
                kind=entry.kind,
                amount=entry.amount,
                resulting_balance=new_balance,
                reason=entry.reason,
                description=entry.description,
                metadata=dict(entry.metadata),
                idempotency_key=entry.idempotency_key,
                created_at=now,
            )
            await self._write_transaction(tx)
            if usage is not None:
                self._usage.append(usage.model_copy(deep=True))
            account.balance = new_balance
            account.ledger_seq = tx.seq
            account.updated_at = now
            return tx.model_copy(deep=True)

    async def _write_transaction(self, tx: TransactionRecord) -> None:
        self._transactions[tx.account_id].append(tx)

    def _find(self, account_id: str, idempotency_key: str) -> TransactionRecord | None:
        for tx in self._transactions.get(account_id, []):
            if tx.idempotency_key == idempotency_key:
                return tx
        return None

    async def find_transaction(self, account_id: str, idempotency_key: str) -> TransactionRecord | None:
        tx = self._find(account_id, idempotency_key)
        return tx.model_copy(deep=True) if tx else None

    async def list_transactions(
        self, account_id: str, query: TransactionQuery
    ) -> tuple[list[TransactionRecord], int]:
        items = [
            tx
            for tx in self._transactions.get(account_id, [])
            if (query.kind is None or tx.kind == query.kind)
            and (query.start is None or tx.created_at >= query.start)
            and (query.end is None or tx.created_at <= query.end)
        ]
        items.sort(key=lambda tx: (tx.created_at, tx.seq), reverse=query.descending)
        page = items[query.offset : query.offset + query.limit]
        return [tx.model_copy(deep=True) for tx in page], len(items)

    # Usage log

    async def append_usage(self, usage: UsageRecord) -> None:
        self._usage.append(usage.model_copy(deep=True))

    async def list_usage(
        self,
        account_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        operation: str | None = None,
    ) -> list[UsageRecord]:
        out = [
            u
            for u in self._usage
            if u.account_id == account_id
            and (operation is None or u.operation == operation)
            and (since is None or u.created_at >= since)
            and (until is None or u.created_at <= until)
        ]
        out.sort(key=lambda u: u.created_at)
        return [u.model_copy(deep=True) for u in out]

    # Entitlements

    async def get_entitlement(self, account_id: str, operation: str) -> EntitlementRecord | None:
        ent = self._entitlements.get((account_id, operation))
        return ent.model_copy(deep=True) if ent else None

    async def list_entitlements(self, account_id: str) -> list[EntitlementRecord]:
        return [
            ent.model_copy(deep=True)
            for (owner, _), ent in sorted(self._entitlements.items())
            if owner == account_id
        ]

    async def save_entitlement(
        self,
        account_id: str,
        operation: str,
        status: EntitlementStatus,
        ceilings: dict[str, int | None] | None = None,
    ) -> EntitlementRecord:
        async with self._locks[account_id]:
            now = utcnow()
            ent = self._entitlements.get((account_id, operation))
            if ent is None:
                ent = EntitlementRecord(
                    id=uuid.uuid4().hex,
                    account_id=account_id,
                    operation=operation,
                    status=status,
                    subscribed_at=now,
                )
                self._entitlements[(account_id, operation)] = ent
            elif status == EntitlementStatus.ACTIVE and ent.status != EntitlementStatus.ACTIVE:
                ent.subscribed_at = now
            ent.status = status
            if ceilings is not None:
                ent.limits = {name: UsageLimit(used=0, ceiling=c) for name, c in ceilings.items()}
            ent.updated_at = now
            return ent.model_copy(deep=True)

    async def consume_entitlement(
        self, account_id: str, operation: str, limit: str, now: datetime
    ) -> tuple[ConsumeOutcome, EntitlementRecord | None]:
        async with self._locks[account_id]:
            ent = self._entitlements.get((account_id, operation))
            if ent is None or ent.status != EntitlementStatus.ACTIVE:
                return ConsumeOutcome.NOT_ENTITLED, ent.model_copy(deep=True) if ent else None
            counter = ent.limits.setdefault(limit, UsageLimit())
            if counter.exhausted:
                return ConsumeOutcome.LIMIT_EXCEEDED, ent.model_copy(deep=True)
            counter.used += 1
            ent.last_used_at = now
            ent.updated_at = now
            return ConsumeOutcome.ADMITTED, ent.model_copy(deep=True)

    async def reset_usage(self, account_id: str, operation: str) -> EntitlementRecord | None:
        async with self._locks[account_id]:
            ent = self._entitlements.get((account_id, operation))
            if ent is None:
                return None
            for counter in ent.limits.values():
                counter.used = 0
            ent.updated_at = utcnow()
            return ent.model_copy(deep=True)

    # Audit

    async def append_audit(self, record: AuditRecord) -> None:
        self._audit.append(record.model_copy(deep=True))

    def balance_chain(self, account_id: str) -> list[int]:
        """Resulting balances in commit order."""
        return [tx.resulting_balance for tx in self._transactions.get(account_id, [])]

"""Credit ledger: balance movements with an auditable, gapless transaction chain."""

import asyncio
from datetime import datetime
from typing import Any

from app.core.exceptions import (
    BadRequestError,
    CommitFailedError,
    InsufficientCreditsError,
    NotFoundError,
    StoreUnavailableError,
)
from app.core.logging import get_logger
from app.core.pagination import Page, paginate
from app.core.retry import RetryExhaustedError, RetryPolicy
from app.store.base import (
    AccountNotFoundError,
    BalanceTooLowError,
    MeteringStore,
    StoreError,
    TransientStoreError,
)
from app.store.types import (
    LedgerEntry,
    TransactionKind,
    TransactionQuery,
    TransactionReason,
    TransactionRecord,
    UsageRecord,
)

log = get_logger(__name__)

CREDIT_REASONS = frozenset({TransactionReason.PURCHASE, TransactionReason.BONUS, TransactionReason.REFUND})
DEBIT_REASONS = frozenset({TransactionReason.API_USAGE, TransactionReason.SUBSCRIPTION})


class LedgerStore:
    def __init__(
        self,
        store: MeteringStore,
        retry: RetryPolicy | None = None,
        timeout: float | None = 2.0,
    ) -> None:
        self._store = store
        self._retry = retry or RetryPolicy(retry_on=(TransientStoreError,))
        self._timeout = timeout

    async def get_balance(self, account_id: str) -> int:
        account = await self._store.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account.balance

    async def credit(
        self,
        account_id: str,
        amount: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None = None,
        description: str = "",
        idempotency_key: str | None = None,
    ) -> int:
        """Add credits; returns the balance. A repeated idempotency_key is applied once.

        A replayed key returns the current balance, not the one recorded on
        the original transaction.
        """
        tx = await self.post_credit(account_id, amount, reason, metadata, description, idempotency_key)
        if idempotency_key:
            return await self.get_balance(account_id)
        return tx.resulting_balance

    async def post_credit(
        self,
        account_id: str,
        amount: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None = None,
        description: str = "",
        idempotency_key: str | None = None,
    ) -> TransactionRecord:
        if reason not in CREDIT_REASONS:
            raise BadRequestError(f"Invalid credit reason: {reason}")
        entry = self._entry(account_id, TransactionKind.CREDIT, amount, reason, metadata, description, idempotency_key)
        return await self._post(entry)

    async def debit(
        self,
        account_id: str,
        amount: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None = None,
        description: str = "",
    ) -> int:
        """Remove credits; fails closed with InsufficientCreditsError. Returns the new balance."""
        if reason not in DEBIT_REASONS:
            raise BadRequestError(f"Invalid debit reason: {reason}")
        entry = self._entry(account_id, TransactionKind.DEBIT, amount, reason, metadata, description, None)
        tx = await self._post(entry)
        return tx.resulting_balance

    async def commit_charge(
        self,
        account_id: str,
        operation: str,
        cost: int,
        charge_id: str,
        usage: UsageRecord,
    ) -> TransactionRecord | None:
        """Debit cost for a completed operation together with its usage entry.

        The debit, its transaction and the usage entry land as one unit; the
        unit is retried on transient store errors and abandoned with
        CommitFailedError once the policy gives up. Returns None for
        zero-cost operations, which only log usage.
        """
        if cost <= 0:

            async def append() -> None:
                try:
                    await asyncio.wait_for(self._store.append_usage(usage), self._timeout)
                except asyncio.TimeoutError as exc:
                    raise TransientStoreError("usage append timed out") from exc

            try:
                await self._retry.run(append, name="usage_append")
            except (RetryExhaustedError, StoreError) as exc:
                raise CommitFailedError(operation, getattr(exc, "attempts", 1)) from exc
            return None
        entry = LedgerEntry(
            account_id=account_id,
            kind=TransactionKind.DEBIT,
            amount=cost,
            reason=TransactionReason.API_USAGE,
            description=f"API Usage: {operation}",
            metadata={"operation": operation, "charge_id": charge_id},
            idempotency_key=charge_id,
        )
        try:
            return await self._apply(entry, usage)
        except RetryExhaustedError as exc:
            raise CommitFailedError(operation, exc.attempts) from exc
        except StoreError as exc:
            log.error("ledger_commit_error", operation=operation, error=str(exc))
            raise CommitFailedError(operation, 1) from exc

    async def record_usage(self, usage: UsageRecord) -> None:
        """Append an uncharged usage entry; single attempt, bounded by the store timeout."""
        try:
            await asyncio.wait_for(self._store.append_usage(usage), self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransientStoreError("usage append timed out") from exc

    async def list_transactions(
        self,
        account_id: str,
        kind: TransactionKind | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        page_size: int = 10,
        descending: bool = True,
    ) -> Page[TransactionRecord]:
        limit, offset = paginate(page, page_size)
        if start and end and start > end:
            raise BadRequestError("start_date must not be after end_date")
        query = TransactionQuery(kind=kind, start=start, end=end, descending=descending, limit=limit, offset=offset)
        items, total = await self._store.list_transactions(account_id, query)
        return Page[TransactionRecord](items=items, total=total, page=max(1, page), page_size=limit)

    def _entry(
        self,
        account_id: str,
        kind: TransactionKind,
        amount: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None,
        description: str,
        idempotency_key: str | None,
    ) -> LedgerEntry:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise BadRequestError("amount must be a positive integer", details={"amount": amount})
        return LedgerEntry(
            account_id=account_id,
            kind=kind,
            amount=amount,
            reason=reason,
            description=description,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )

    async def _post(self, entry: LedgerEntry) -> TransactionRecord:
        try:
            tx = await self._apply(entry)
        except RetryExhaustedError as exc:
            raise StoreUnavailableError() from exc
        log.info(
            "ledger_entry",
            account_id=entry.account_id,
            kind=entry.kind.value,
            amount=entry.amount,
            reason=entry.reason.value,
            balance_after=tx.resulting_balance,
        )
        return tx

    async def _apply(self, entry: LedgerEntry, usage: UsageRecord | None = None) -> TransactionRecord:
        async def attempt() -> TransactionRecord:
            try:
                return await asyncio.wait_for(self._store.apply_entry(entry, usage), self._timeout)
            except asyncio.TimeoutError as exc:
                raise TransientStoreError("ledger commit timed out") from exc

        try:
            return await self._retry.run(attempt, name="ledger_commit")
        except BalanceTooLowError as exc:
            raise InsufficientCreditsError(exc.required, exc.available) from exc
        except AccountNotFoundError as exc:
            raise NotFoundError("Account not found") from exc

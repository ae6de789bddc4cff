"""Charge coordinator: admit, perform external work, then settle the charge.

States of one call::

    ADMITTED -> WORK_DONE -> COMMITTED
    ADMITTED -> WORK_FAILED                 (no charge)
    WORK_DONE -> COMMIT_FAILED              (no charge, reported as an error)

Admission failures (not entitled, limit exceeded, insufficient credits) leave
no trace besides the consumed entitlement unit. Once the work is done the
settlement runs to completion even if the caller goes away.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from app.core.exceptions import (
    CommitFailedError,
    ExternalOperationError,
    InsufficientCreditsError,
    StoreUnavailableError,
)
from app.core.logging import get_logger
from app.core.security import generate_charge_id
from app.services.entitlements import EntitlementRegistry
from app.services.ledger import LedgerStore
from app.services.metering import MeteringGate
from app.services.notifications import NotificationHub
from app.store.base import StoreError
from app.store.types import TransactionRecord, UsageRecord

log = get_logger(__name__)


class ChargeState(str, Enum):
    ADMITTED = "ADMITTED"
    WORK_DONE = "WORK_DONE"
    WORK_FAILED = "WORK_FAILED"
    COMMITTED = "COMMITTED"
    COMMIT_FAILED = "COMMIT_FAILED"


@dataclass
class ExternalResult:
    """Outcome of the external operation: a JSON payload or a binary artifact."""

    status_code: int = 200
    data: Any = None
    content: bytes | None = None
    media_type: str = "application/json"

    @property
    def is_binary(self) -> bool:
        return self.content is not None


@dataclass
class ChargeResult:
    result: ExternalResult
    new_balance: int
    charged: int
    transaction: TransactionRecord | None
    charge_id: str
    state: ChargeState = ChargeState.COMMITTED


Perform = Callable[[], Awaitable[ExternalResult]]


@dataclass
class _Admission:
    account_id: str
    operation: str
    cost: int
    charge_id: str
    request_meta: dict[str, Any] = field(default_factory=dict)


class ChargeCoordinator:
    def __init__(
        self,
        entitlements: EntitlementRegistry,
        gate: MeteringGate,
        ledger: LedgerStore,
        hub: NotificationHub,
    ) -> None:
        self._entitlements = entitlements
        self._gate = gate
        self._ledger = ledger
        self._hub = hub
        self._settling: set[asyncio.Task] = set()

    async def admit_and_charge(
        self,
        account_id: str,
        operation: str,
        perform: Perform,
        request_meta: dict[str, Any] | None = None,
    ) -> ChargeResult:
        check = await self._entitlements.check_entitlement(account_id, operation)
        if not check.allowed:
            check.raise_for_outcome()
        quote = await self._gate.check_balance(account_id, operation)
        if not quote.allowed:
            raise InsufficientCreditsError(quote.cost, quote.balance)

        admission = _Admission(account_id, operation, quote.cost, generate_charge_id(), request_meta or {})
        log.info(
            "charge_admitted",
            state=ChargeState.ADMITTED.value,
            operation=operation,
            cost=quote.cost,
            charge_id=admission.charge_id,
        )

        started = time.perf_counter()
        try:
            result = await perform()
        except ExternalOperationError as exc:
            await self._work_failed(admission, started, exc)
            raise
        except Exception as exc:
            err = ExternalOperationError(None, str(exc) or "External operation failed")
            await self._work_failed(admission, started, err)
            raise err from exc
        latency_ms = _elapsed_ms(started)
        log.info(
            "charge_work_done",
            state=ChargeState.WORK_DONE.value,
            operation=operation,
            charge_id=admission.charge_id,
            latency_ms=latency_ms,
        )

        # The caller may disconnect from here on; settlement must still finish.
        task = asyncio.ensure_future(self._settle(admission, result, latency_ms))
        self._settling.add(task)
        task.add_done_callback(self._settled)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for settlements still running after their callers went away."""
        if self._settling:
            await asyncio.gather(*self._settling, return_exceptions=True)

    def _settled(self, task: asyncio.Task) -> None:
        self._settling.discard(task)
        if not task.cancelled():
            task.exception()

    async def _settle(self, admission: _Admission, result: ExternalResult, latency_ms: float) -> ChargeResult:
        usage = UsageRecord(
            account_id=admission.account_id,
            operation=admission.operation,
            status_code=result.status_code,
            latency_ms=latency_ms,
            credits_charged=admission.cost,
            outcome="success",
            request_meta=admission.request_meta,
        )
        try:
            tx = await self._ledger.commit_charge(
                admission.account_id,
                admission.operation,
                admission.cost,
                admission.charge_id,
                usage,
            )
        except InsufficientCreditsError as exc:
            log.warning(
                "charge_commit_failed",
                state=ChargeState.COMMIT_FAILED.value,
                operation=admission.operation,
                charge_id=admission.charge_id,
                reason="insufficient_credits",
                available=exc.available,
            )
            await self._record_uncharged(usage, 402, "insufficient_credits", exc.message)
            raise
        except CommitFailedError as exc:
            log.error(
                "charge_commit_failed",
                state=ChargeState.COMMIT_FAILED.value,
                operation=admission.operation,
                charge_id=admission.charge_id,
                reason="commit_failed",
                attempts=exc.attempts,
            )
            await self._record_uncharged(usage, 503, "commit_failed", exc.message)
            raise

        if tx is None:
            new_balance = await self._ledger.get_balance(admission.account_id)
            charged = 0
        else:
            new_balance = tx.resulting_balance
            charged = tx.amount
            self._hub.balance_update(admission.account_id, new_balance, sequence=tx.seq)
        log.info(
            "charge_committed",
            state=ChargeState.COMMITTED.value,
            operation=admission.operation,
            charge_id=admission.charge_id,
            charged=charged,
            balance_after=new_balance,
        )
        return ChargeResult(
            result=result,
            new_balance=new_balance,
            charged=charged,
            transaction=tx,
            charge_id=admission.charge_id,
        )

    async def _work_failed(self, admission: _Admission, started: float, exc: ExternalOperationError) -> None:
        log.warning(
            "charge_work_failed",
            state=ChargeState.WORK_FAILED.value,
            operation=admission.operation,
            charge_id=admission.charge_id,
            upstream_status=exc.upstream_status,
            error=exc.message,
        )
        usage = UsageRecord(
            account_id=admission.account_id,
            operation=admission.operation,
            status_code=exc.status_code,
            latency_ms=_elapsed_ms(started),
            credits_charged=0,
            outcome="external_failed",
            error=exc.message,
            request_meta=admission.request_meta,
        )
        await self._record_uncharged(usage, exc.status_code, "external_failed", exc.message)

    async def _record_uncharged(self, usage: UsageRecord, status_code: int, outcome: str, error: str) -> None:
        entry = usage.model_copy(
            update={"credits_charged": 0, "status_code": status_code, "outcome": outcome, "error": error}
        )
        try:
            await self._ledger.record_usage(entry)
        except (StoreError, StoreUnavailableError) as exc:
            log.warning("usage_log_failed", operation=usage.operation, outcome=outcome, error=str(exc))


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)

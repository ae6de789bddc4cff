"""Balance pre-check for a metered operation."""

import asyncio
from dataclasses import dataclass

from app.core.exceptions import ForbiddenError, NotFoundError, StoreUnavailableError
from app.services.catalog import OperationCatalog
from app.store.base import MeteringStore, TransientStoreError


@dataclass(frozen=True)
class BalanceQuote:
    allowed: bool
    cost: int
    balance: int


class MeteringGate:
    """Read-then-decide check; the ledger re-validates the balance at commit."""

    def __init__(self, store: MeteringStore, catalog: OperationCatalog, timeout: float | None = 2.0) -> None:
        self._store = store
        self._catalog = catalog
        self._timeout = timeout

    async def check_balance(self, account_id: str, operation: str) -> BalanceQuote:
        cost = self._catalog.cost_of(operation)
        try:
            account = await asyncio.wait_for(self._store.get_account(account_id), self._timeout)
        except (asyncio.TimeoutError, TransientStoreError) as exc:
            raise StoreUnavailableError(operation) from exc
        if not account:
            raise NotFoundError("Account not found")
        if account.disabled:
            raise ForbiddenError("Account is disabled")
        return BalanceQuote(allowed=account.balance >= cost, cost=cost, balance=account.balance)

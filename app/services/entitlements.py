"""Per-account, per-operation subscriptions and usage ceilings."""

import asyncio
from dataclasses import dataclass

from app.core.exceptions import (
    ConflictError,
    LimitExceededError,
    NotEntitledError,
    NotFoundError,
    StoreUnavailableError,
)
from app.core.logging import get_logger
from app.services.catalog import API_CALLS_LIMIT, OperationCatalog
from app.services.notifications import NotificationHub
from app.store.base import MeteringStore, TransientStoreError
from app.store.types import ConsumeOutcome, EntitlementRecord, EntitlementStatus, utcnow

log = get_logger(__name__)


@dataclass
class EntitlementCheck:
    allowed: bool
    entitlement: EntitlementRecord | None
    outcome: ConsumeOutcome
    operation: str

    def raise_for_outcome(self) -> None:
        if self.outcome == ConsumeOutcome.NOT_ENTITLED:
            raise NotEntitledError(self.operation)
        if self.outcome == ConsumeOutcome.LIMIT_EXCEEDED:
            counter = self.entitlement.limits.get(API_CALLS_LIMIT) if self.entitlement else None
            raise LimitExceededError(
                self.operation,
                API_CALLS_LIMIT,
                used=counter.used if counter else 0,
                ceiling=counter.ceiling if counter else 0,
            )


class EntitlementRegistry:
    def __init__(
        self,
        store: MeteringStore,
        catalog: OperationCatalog,
        hub: NotificationHub,
        timeout: float | None = 2.0,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._hub = hub
        self._timeout = timeout

    async def check_entitlement(self, account_id: str, operation: str) -> EntitlementCheck:
        """Admit one call of operation for account_id.

        Entitlement-free operations always pass and touch nothing. Otherwise
        the call passes when an ACTIVE entitlement exists and its api_calls
        counter is below the ceiling; passing consumes one unit of the counter.
        The unit stays consumed even if the call is later rejected or fails,
        since the counter tracks admitted attempts rather than billed calls.
        """
        if self._catalog.is_entitlement_free(operation):
            return EntitlementCheck(True, None, ConsumeOutcome.ADMITTED, operation)
        outcome, ent = await self._call(
            self._store.consume_entitlement(account_id, operation, API_CALLS_LIMIT, utcnow()),
            operation,
        )
        return EntitlementCheck(outcome == ConsumeOutcome.ADMITTED, ent, outcome, operation)

    async def list_entitlements(self, account_id: str) -> list[EntitlementRecord]:
        return await self._store.list_entitlements(account_id)

    async def subscribe(self, account_id: str, operation: str) -> EntitlementRecord:
        """Create or reactivate the entitlement; usage counters restart at zero.

        Subscribing while ACTIVE raises ConflictError and keeps consumed units.
        """
        if not self._catalog.get(operation):
            raise NotFoundError("API not found")
        current = await self._store.get_entitlement(account_id, operation)
        if current and current.status == EntitlementStatus.ACTIVE:
            raise ConflictError("You are already subscribed to this API")
        ent = await self._store.save_entitlement(
            account_id,
            operation,
            EntitlementStatus.ACTIVE,
            ceilings=self._catalog.ceilings_for(operation),
        )
        log.info("entitlement_subscribed", account_id=account_id, operation=operation)
        self._hub.subscription_update(account_id, operation, ent.status.value)
        return ent

    async def unsubscribe(self, account_id: str, operation: str) -> EntitlementRecord:
        if not await self._store.get_entitlement(account_id, operation):
            raise NotFoundError("Subscription not found")
        ent = await self._store.save_entitlement(account_id, operation, EntitlementStatus.INACTIVE)
        log.info("entitlement_unsubscribed", account_id=account_id, operation=operation)
        self._hub.subscription_update(account_id, operation, ent.status.value)
        return ent

    async def reset_usage(self, account_id: str, operation: str) -> EntitlementRecord:
        ent = await self._store.reset_usage(account_id, operation)
        if not ent:
            raise NotFoundError("Subscription not found")
        log.info("entitlement_usage_reset", account_id=account_id, operation=operation)
        return ent

    async def _call(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, self._timeout)
        except (asyncio.TimeoutError, TransientStoreError) as exc:
            log.warning("entitlement_check_unavailable", operation=operation, error=str(exc) or type(exc).__name__)
            raise StoreUnavailableError(operation) from exc

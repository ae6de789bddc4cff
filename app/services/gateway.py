"""Per-instance wiring of the metering services.

One Gateway is built at startup and stored on app.state; request handlers
reach it through app.deps.get_gateway instead of module globals.
"""

from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis

from app.core.config import Settings, get_settings
from app.core.logging import get_logger
from app.core.retry import RetryPolicy, Sleep, fixed_backoff
from app.services.accounts import AccountService
from app.services.catalog import OperationCatalog, build_catalog
from app.services.charging import ChargeCoordinator
from app.services.documents import DocumentProcessingClient
from app.services.entitlements import EntitlementRegistry
from app.services.ledger import LedgerStore
from app.services.metering import MeteringGate
from app.services.notifications import NotificationHub
from app.services.usage import UsageAnalytics
from app.store.base import MeteringStore, TransientStoreError, get_store

log = get_logger(__name__)


@dataclass
class Gateway:
    settings: Settings
    store: MeteringStore
    catalog: OperationCatalog
    hub: NotificationHub
    ledger: LedgerStore
    entitlements: EntitlementRegistry
    gate: MeteringGate
    coordinator: ChargeCoordinator
    usage: UsageAnalytics
    accounts: AccountService
    documents: DocumentProcessingClient
    redis: Any = None

    async def start(self) -> None:
        await self.store.init()
        log.info("startup", msg="Store ready", backend=type(self.store).__name__)

    async def close(self) -> None:
        await self.coordinator.drain()
        await self.documents.close()
        if self.redis is not None:
            await self.redis.aclose()
        await self.store.close()


def build_gateway(
    settings: Settings | None = None,
    store: MeteringStore | None = None,
    sleep: Sleep | None = None,
    documents: DocumentProcessingClient | None = None,
) -> Gateway:
    s = settings or get_settings()
    store = store or get_store()
    catalog = build_catalog(s)
    hub = NotificationHub(queue_size=s.notification_queue_size)
    retry_kwargs = {"sleep": sleep} if sleep is not None else {}
    retry = RetryPolicy(
        max_attempts=s.ledger_retry_attempts,
        backoff=fixed_backoff(s.ledger_retry_backoff_seconds),
        retry_on=(TransientStoreError,),
        **retry_kwargs,
    )
    timeout = s.store_timeout_seconds or None
    ledger = LedgerStore(store, retry, timeout=timeout)
    entitlements = EntitlementRegistry(store, catalog, hub, timeout=timeout)
    gate = MeteringGate(store, catalog, timeout=timeout)
    redis = aioredis.from_url(s.redis_url, decode_responses=True) if s.redis_url else None
    return Gateway(
        settings=s,
        store=store,
        catalog=catalog,
        hub=hub,
        ledger=ledger,
        entitlements=entitlements,
        gate=gate,
        coordinator=ChargeCoordinator(entitlements, gate, ledger, hub),
        usage=UsageAnalytics(store, catalog),
        accounts=AccountService(store, ledger, starting_grant=s.starting_grant_credits),
        documents=documents or DocumentProcessingClient(s.document_service_url, s.document_service_timeout_seconds),
        redis=redis,
    )

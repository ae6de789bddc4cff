from abc import ABC, abstractmethod
from datetime import datetime

from app.core.config import get_settings
from app.store.types import (
    AccountRecord,
    AuditRecord,
    ConsumeOutcome,
    EntitlementRecord,
    EntitlementStatus,
    LedgerEntry,
    TransactionQuery,
    TransactionRecord,
    UsageRecord,
)


class StoreError(Exception):
    """Storage failure that is not worth retrying."""


class TransientStoreError(StoreError):
    """Timeout, write conflict or lost connection; the unit may be retried."""


class AccountNotFoundError(StoreError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class DuplicateAccountError(StoreError):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Account {email} already exists")


class BalanceTooLowError(StoreError):
    """A debit would take the balance below zero; nothing was written."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Balance {available} is below {required}")


class MeteringStore(ABC):
    """Persistence for accounts, the ledger, entitlements and usage logs.

    apply_entry is the only mutation of an account balance. It must apply the
    balance change, the transaction append and the optional usage append as one
    unit scoped to the account, and must serialize concurrent calls against the
    same account so that seq and resulting_balance form a gapless chain.
    """

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # Accounts

    @abstractmethod
    async def insert_account(self, email: str, name: str = "", role: str = "user") -> AccountRecord:
        ...

    @abstractmethod
    async def get_account(self, account_id: str) -> AccountRecord | None:
        ...

    @abstractmethod
    async def set_account_disabled(self, account_id: str, disabled: bool) -> AccountRecord | None:
        ...

    # Ledger

    @abstractmethod
    async def apply_entry(self, entry: LedgerEntry, usage: UsageRecord | None = None) -> TransactionRecord:
        """Atomically move the balance and append the transaction (and usage).

        Raises BalanceTooLowError for a debit the balance cannot cover,
        AccountNotFoundError, or TransientStoreError. Returns the existing
        transaction when entry.idempotency_key was already applied.
        """
        ...

    @abstractmethod
    async def find_transaction(self, account_id: str, idempotency_key: str) -> TransactionRecord | None:
        ...

    @abstractmethod
    async def list_transactions(
        self, account_id: str, query: TransactionQuery
    ) -> tuple[list[TransactionRecord], int]:
        ...

    # Usage log

    @abstractmethod
    async def append_usage(self, usage: UsageRecord) -> None:
        ...

    @abstractmethod
    async def list_usage(
        self,
        account_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        operation: str | None = None,
    ) -> list[UsageRecord]:
        """Usage entries oldest first."""
        ...

    # Entitlements

    @abstractmethod
    async def get_entitlement(self, account_id: str, operation: str) -> EntitlementRecord | None:
        ...

    @abstractmethod
    async def list_entitlements(self, account_id: str) -> list[EntitlementRecord]:
        ...

    @abstractmethod
    async def save_entitlement(
        self,
        account_id: str,
        operation: str,
        status: EntitlementStatus,
        ceilings: dict[str, int | None] | None = None,
    ) -> EntitlementRecord:
        """Upsert status. When ceilings is given the counters restart at zero."""
        ...

    @abstractmethod
    async def consume_entitlement(
        self, account_id: str, operation: str, limit: str, now: datetime
    ) -> tuple[ConsumeOutcome, EntitlementRecord | None]:
        """Atomically admit one call: requires ACTIVE status and used < ceiling.

        On admission increments limits[limit].used and sets last_used_at.
        """
        ...

    @abstractmethod
    async def reset_usage(self, account_id: str, operation: str) -> EntitlementRecord | None:
        ...

    # Audit

    @abstractmethod
    async def append_audit(self, record: AuditRecord) -> None:
        ...


def get_store() -> MeteringStore:
    settings = get_settings()
    if settings.ledger_backend == "memory":
        from app.store.memory import MemoryMeteringStore
        return MemoryMeteringStore()
    from app.store.mongo import MongoMeteringStore
    return MongoMeteringStore()

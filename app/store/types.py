"""Records exchanged between the metering services and a store backend."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionKind(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionReason(str, Enum):
    PURCHASE = "PURCHASE"
    API_USAGE = "API_USAGE"
    BONUS = "BONUS"
    REFUND = "REFUND"
    SUBSCRIPTION = "SUBSCRIPTION"


class EntitlementStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class AccountRecord(BaseModel):
    id: str
    email: str
    name: str = ""
    role: str = "user"  # "user" | "admin"
    balance: int = 0
    ledger_seq: int = 0
    disabled: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LedgerEntry(BaseModel):
    """A requested balance movement; the store fills in seq and resulting_balance."""

    account_id: str
    kind: TransactionKind
    amount: int = Field(gt=0)
    reason: TransactionReason
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None

    @property
    def delta(self) -> int:
        return self.amount if self.kind == TransactionKind.CREDIT else -self.amount


class TransactionRecord(BaseModel):
    id: str
    account_id: str
    seq: int
    kind: TransactionKind
    amount: int
    resulting_balance: int
    reason: TransactionReason
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class TransactionQuery(BaseModel):
    kind: TransactionKind | None = None
    start: datetime | None = None
    end: datetime | None = None
    descending: bool = True
    limit: int = 10
    offset: int = 0


class UsageLimit(BaseModel):
    used: int = 0
    ceiling: int | None = None

    @property
    def exhausted(self) -> bool:
        return self.ceiling is not None and self.used >= self.ceiling


class EntitlementRecord(BaseModel):
    id: str
    account_id: str
    operation: str
    status: EntitlementStatus = EntitlementStatus.ACTIVE
    limits: dict[str, UsageLimit] = Field(default_factory=dict)
    subscribed_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class ConsumeOutcome(str, Enum):
    ADMITTED = "admitted"
    NOT_ENTITLED = "not_entitled"
    LIMIT_EXCEEDED = "limit_exceeded"


class UsageRecord(BaseModel):
    account_id: str
    operation: str
    status_code: int
    latency_ms: float
    credits_charged: int = 0
    outcome: str = ""
    error: str | None = None
    request_meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class AuditRecord(BaseModel):
    user_id: str | None = None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

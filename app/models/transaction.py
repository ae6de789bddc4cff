from datetime import datetime
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from app.store.types import TransactionKind, TransactionReason, utcnow


class LedgerTransaction(Document):
    """Immutable ledger entry; corrections are new REFUND/BONUS entries."""
    account_id: PydanticObjectId
    seq: int
    kind: TransactionKind
    amount: int  # always positive; kind gives the direction
    resulting_balance: int
    reason: TransactionReason
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)  # operation, payment/order refs
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "transactions"
        indexes = [
            IndexModel([("account_id", ASCENDING), ("seq", ASCENDING)], unique=True),
            IndexModel([("account_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("account_id", ASCENDING), ("kind", ASCENDING)]),
            IndexModel(
                [("account_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
        ]

from datetime import datetime
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field

from app.store.types import utcnow


class UsageLogEntry(Document):
    """One metered call, written once and only read for reporting."""
    account_id: PydanticObjectId
    operation: str
    status_code: int
    latency_ms: float
    credits_charged: int = 0
    outcome: str = ""  # committed, work_failed, commit_failed, insufficient_credits
    error: str | None = None
    request_meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "usage_logs"
        indexes = [
            [("account_id", 1), ("created_at", -1)],
            [("account_id", 1), ("operation", 1)],
        ]

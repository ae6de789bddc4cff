from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field

from app.store.types import utcnow


class AuditLog(Document):
    user_id: str | None = None  # acting admin; None for system events
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
        ]

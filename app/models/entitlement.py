from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel

from app.store.types import EntitlementStatus, UsageLimit, utcnow


class Entitlement(Document):
    account_id: PydanticObjectId
    operation: str
    status: EntitlementStatus = EntitlementStatus.ACTIVE
    limits: dict[str, UsageLimit] = Field(default_factory=dict)  # e.g. {"api_calls": {used, ceiling}}
    subscribed_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "entitlements"
        indexes = [
            IndexModel([("account_id", ASCENDING), ("operation", ASCENDING)], unique=True),
        ]

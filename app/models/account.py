from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from app.store.types import utcnow


class Account(Document):
    """Billable account; balance changes only through ledger transactions."""
    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "user"  # "user" | "admin"
    balance: int = 0
    ledger_seq: int = 0  # seq of the last committed transaction
    disabled: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "accounts"

import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.models.account import Account
from app.models.audit_log import AuditLog
from app.models.entitlement import Entitlement
from app.models.transaction import LedgerTransaction
from app.models.usage_log import UsageLogEntry

DOCUMENT_MODELS = [
    Account,
    LedgerTransaction,
    Entitlement,
    UsageLogEntry,
    AuditLog,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(uri: str | None = None, db_name: str | None = None) -> AsyncIOMotorClient:
    """Connect, register document models and return the client (sessions start from it)."""
    settings = get_settings()
    uri = uri or settings.mongodb_uri
    # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    kwargs = {"tz_aware": True}
    if _use_tls(uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(uri, **kwargs)
    database = client[db_name or settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client

from app.models.account import Account
from app.models.transaction import LedgerTransaction
from app.models.entitlement import Entitlement
from app.models.usage_log import UsageLogEntry
from app.models.audit_log import AuditLog

__all__ = [
    "Account",
    "LedgerTransaction",
    "Entitlement",
    "UsageLogEntry",
    "AuditLog",
]

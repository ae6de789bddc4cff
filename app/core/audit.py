"""Audit log for critical actions."""

from typing import Any

from app.store.base import MeteringStore
from app.store.types import AuditRecord


async def log_event(
    store: MeteringStore,
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to the audit log of the active store."""
    await store.append_audit(
        AuditRecord(
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        )
    )

"""Best-effort fan-out of ledger and entitlement changes to live connections."""

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from app.core.logging import get_logger

log = get_logger(__name__)

BALANCE_UPDATE = "balance_update"
SUBSCRIPTION_UPDATE = "subscription_update"


@dataclass(eq=False)
class Connection:
    """Outbound channel of one live socket. The socket task drains the queue."""

    account_id: str
    queue: asyncio.Queue
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    last_sequence: int | None = None

    async def next_event(self) -> dict[str, Any]:
        return await self.queue.get()


class NotificationHub:
    """Per-account registry of connections, owned by one service instance.

    notify never blocks and never retries: an event that does not fit in a
    connection's queue is dropped for that connection. Events carrying a
    ledger sequence are delivered in sequence order; a late event whose
    sequence is not newer than the last one queued on a connection is
    discarded for it, so a stale balance never overwrites a fresher one.
    Sequence tracking lives on the connection and goes away with it.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._connections: dict[str, dict[str, Connection]] = defaultdict(dict)

    def register(self, account_id: str) -> Connection:
        conn = Connection(account_id=account_id, queue=asyncio.Queue(maxsize=self._queue_size))
        self._connections[account_id][conn.id] = conn
        log.info("notification_connection_opened", account_id=account_id, connection_id=conn.id)
        return conn

    def unregister(self, conn: Connection) -> None:
        conns = self._connections.get(conn.account_id)
        if not conns:
            return
        conns.pop(conn.id, None)
        if not conns:
            del self._connections[conn.account_id]
        log.info("notification_connection_closed", account_id=conn.account_id, connection_id=conn.id)

    def connection_count(self, account_id: str) -> int:
        return len(self._connections.get(account_id, {}))

    def notify(self, account_id: str, event: dict[str, Any], sequence: int | None = None) -> int:
        """Queue event on every connection of account_id; returns how many accepted it."""
        delivered = 0
        for conn in list(self._connections.get(account_id, {}).values()):
            if sequence is not None:
                if conn.last_sequence is not None and sequence <= conn.last_sequence:
                    log.debug(
                        "notification_stale",
                        connection_id=conn.id,
                        sequence=sequence,
                        last_sequence=conn.last_sequence,
                    )
                    continue
                conn.last_sequence = sequence
            try:
                conn.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                log.warning(
                    "notification_dropped",
                    account_id=account_id,
                    connection_id=conn.id,
                    event_type=event.get("type"),
                )
        return delivered

    def balance_update(self, account_id: str, balance: int, sequence: int | None = None) -> int:
        return self.notify(
            account_id,
            {"type": BALANCE_UPDATE, "balance": balance, "sequence": sequence},
            sequence=sequence,
        )

    def subscription_update(self, account_id: str, operation: str, status: str) -> int:
        return self.notify(account_id, {"type": SUBSCRIPTION_UPDATE, "operation": operation, "status": status})

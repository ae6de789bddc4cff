import asyncio
import contextlib

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from app.core.exceptions import AppError
from app.core.logging import get_logger
from app.deps import resolve_account
from app.services.notifications import Connection

router = APIRouter()
log = get_logger(__name__)


async def _pump(websocket: WebSocket, conn: Connection) -> None:
    while True:
        event = await conn.next_event()
        await websocket.send_json(event)


async def _read_until_closed(websocket: WebSocket) -> None:
    # Incoming frames carry nothing; reading detects the disconnect.
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: str | None = Query(None)):
    """Live balance and subscription updates for the token's account."""
    gateway = websocket.app.state.gateway
    origin = websocket.headers.get("origin")
    if origin and origin not in gateway.settings.cors_origins:
        log.warning("ws_rejected", reason="origin", origin=origin)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        account = await resolve_account(gateway, token)
    except AppError as exc:
        log.warning("ws_rejected", reason=exc.code)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    conn = gateway.hub.register(account.id)
    tasks: list[asyncio.Task] = []
    try:
        # Events queued before the greeting wait in the connection queue.
        await websocket.send_json({"type": "connection", "status": "connected"})
        tasks = [
            asyncio.create_task(_pump(websocket, conn)),
            asyncio.create_task(_read_until_closed(websocket)),
        ]
        # Either side ending tears down both.
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                log.warning("ws_closed_with_error", account_id=account.id, connection_id=conn.id, error=repr(exc))
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        gateway.hub.unregister(conn)

import asyncio
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.core.security import create_access_token
from app.main import app
from app.routers.ws import notifications_socket
from app.services.catalog import DOCUMENT_IDENTIFICATION, WELCOME
from conftest import auth_headers


@pytest.fixture
def live(gateway):
    account = asyncio.run(gateway.accounts.create("live@example.com", name="Live"))
    app.state.gateway = gateway
    try:
        with TestClient(app) as c:
            yield c, account
    finally:
        app.state.gateway = None


def test_greeting_then_balance_update(live):
    c, account = live
    with c.websocket_connect(f"/ws?token={create_access_token(account.id)}") as ws:
        assert ws.receive_json() == {"type": "connection", "status": "connected"}
        r = c.post(f"/v1/operations/{WELCOME}", headers=auth_headers(account.id))
        assert r.status_code == 200
        event = ws.receive_json()
        assert event["type"] == "balance_update"
        assert event["balance"] == 99


def test_every_socket_of_the_account_is_notified(live):
    c, account = live
    token = create_access_token(account.id)
    with c.websocket_connect(f"/ws?token={token}") as first, c.websocket_connect(f"/ws?token={token}") as second:
        first.receive_json()
        second.receive_json()
        c.post(f"/v1/entitlements/{DOCUMENT_IDENTIFICATION}", headers=auth_headers(account.id))
        expected = {"type": "subscription_update", "operation": DOCUMENT_IDENTIFICATION, "status": "ACTIVE"}
        assert first.receive_json() == expected
        assert second.receive_json() == expected


def test_rejects_bad_token(live):
    c, _ = live
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with c.websocket_connect("/ws?token=forged") as ws:
            ws.receive_json()
    assert exc_info.value.code == 1008


def test_rejects_foreign_origin(live):
    c, account = live
    with pytest.raises(WebSocketDisconnect):
        with c.websocket_connect(
            f"/ws?token={create_access_token(account.id)}",
            headers={"origin": "https://evil.example"},
        ) as ws:
            ws.receive_json()


class BrokenSocket:
    """Greets fine, then fails on every later send; never receives anything."""

    def __init__(self, gateway):
        self.app = SimpleNamespace(state=SimpleNamespace(gateway=gateway))
        self.headers = {}
        self.sent = []

    async def accept(self):
        pass

    async def close(self, code=1000):
        pass

    async def send_json(self, data):
        if self.sent:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def receive(self):
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_failed_send_tears_down_connection(gateway):
    account = await gateway.accounts.create("broken@example.com", name="Broken")
    socket = BrokenSocket(gateway)
    handler = asyncio.create_task(notifications_socket(socket, token=create_access_token(account.id)))
    while gateway.hub.connection_count(account.id) == 0:
        await asyncio.sleep(0)

    gateway.hub.balance_update(account.id, 42, sequence=99)
    await asyncio.wait_for(handler, timeout=1)

    assert socket.sent == [{"type": "connection", "status": "connected"}]
    assert gateway.hub.connection_count(account.id) == 0

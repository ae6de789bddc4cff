import os
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-process backend, no Redis
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["REDIS_URL"] = ""
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")

from app.core.security import create_access_token  # noqa: E402
from app.services.documents import DocumentProcessingClient  # noqa: E402
from app.services.gateway import Gateway, build_gateway  # noqa: E402
from app.store.memory import MemoryMeteringStore  # noqa: E402
from app.store.types import TransactionReason  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-signature"


class SleepRecorder:
    """Stands in for asyncio.sleep in retry policies."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def document_service(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/document-identification":
        return httpx.Response(200, json={"card_type": "PAN", "side": "front", "is_blurry": False})
    if request.url.path == "/pan-signature-extraction":
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})
    return httpx.Response(404, json={"message": "Not found"})


def auth_headers(account_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(account_id)}"}


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def store() -> MemoryMeteringStore:
    return MemoryMeteringStore()


@pytest.fixture
def gateway(store: MemoryMeteringStore, sleeps: SleepRecorder) -> Gateway:
    documents = DocumentProcessingClient(
        base_url="http://documents.test",
        transport=httpx.MockTransport(document_service),
    )
    return build_gateway(store=store, sleep=sleeps, documents=documents)


@pytest.fixture
def make_account(gateway: Gateway):
    """Factory: account whose ledger starts with a single BONUS credit of `balance`."""

    async def factory(email: str, balance: int = 0, role: str = "user", name: str = "Test User"):
        account = await gateway.store.insert_account(email, name=name, role=role)
        if balance:
            await gateway.ledger.credit(account.id, balance, TransactionReason.BONUS)
        return await gateway.store.get_account(account.id)

    return factory


@pytest_asyncio.fixture
async def client(gateway: Gateway) -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    app.state.gateway = gateway
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.state.gateway = None

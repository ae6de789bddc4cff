import pytest

from app.services.notifications import NotificationHub

pytestmark = pytest.mark.asyncio


def drain(conn):
    events = []
    while not conn.queue.empty():
        events.append(conn.queue.get_nowait())
    return events


async def test_no_connection_is_not_an_error():
    hub = NotificationHub()
    assert hub.balance_update("acct", 10, sequence=1) == 0


async def test_fans_out_to_every_connection_of_the_account():
    hub = NotificationHub()
    a1, a2, other = hub.register("a"), hub.register("a"), hub.register("b")
    assert hub.balance_update("a", 7, sequence=3) == 2
    assert drain(a1) == drain(a2) == [{"type": "balance_update", "balance": 7, "sequence": 3}]
    assert drain(other) == []


async def test_stale_sequence_is_dropped():
    hub = NotificationHub()
    conn = hub.register("a")
    hub.balance_update("a", 5, sequence=4)
    assert hub.balance_update("a", 8, sequence=3) == 0
    hub.balance_update("a", 2, sequence=5)
    assert [e["balance"] for e in drain(conn)] == [5, 2]


async def test_sequence_tracking_is_per_connection():
    hub = NotificationHub()
    first = hub.register("a")
    hub.balance_update("a", 5, sequence=4)
    hub.unregister(first)
    for seq in range(5, 50):
        assert hub.balance_update("a", seq, sequence=seq) == 0
    assert hub.connection_count("a") == 0

    # A fresh connection carries no sequence history from earlier sockets.
    second = hub.register("a")
    assert hub.balance_update("a", 1, sequence=2) == 1
    assert hub.balance_update("a", 0, sequence=1) == 0
    assert drain(second) == [{"type": "balance_update", "balance": 1, "sequence": 2}]
    assert drain(first) == [{"type": "balance_update", "balance": 5, "sequence": 4}]


async def test_full_queue_drops_without_blocking():
    hub = NotificationHub(queue_size=1)
    conn = hub.register("a")
    assert hub.subscription_update("a", "ocr", "ACTIVE") == 1
    assert hub.subscription_update("a", "ocr", "INACTIVE") == 0
    assert drain(conn) == [{"type": "subscription_update", "operation": "ocr", "status": "ACTIVE"}]


async def test_unregister():
    hub = NotificationHub()
    conn = hub.register("a")
    assert hub.connection_count("a") == 1
    hub.unregister(conn)
    hub.unregister(conn)
    assert hub.connection_count("a") == 0
    assert hub.balance_update("a", 1, sequence=1) == 0


async def test_next_event_waits_for_notify():
    hub = NotificationHub()
    conn = hub.register("a")
    hub.subscription_update("a", "ocr", "ACTIVE")
    assert (await conn.next_event())["status"] == "ACTIVE"

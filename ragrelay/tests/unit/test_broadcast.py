from __future__ import annotations

import asyncio

import pytest

from ragrelay.services.broadcast import (
    TOPIC_CHAT,
    TOPIC_KNOWLEDGE,
    BroadcastHub,
    ConnectionClosedError,
    QueueConnection,
)
from ragrelay.tests.utils.fakes import RecordingHandle


async def test_broadcast_without_connections_is_a_noop() -> None:
    hub = BroadcastHub(heartbeat_s=0)
    assert await hub.broadcast("t1", {"type": "document-status"}) == 0
    assert hub.connection_count() == 0


async def test_broadcast_reaches_only_the_tenants_clients() -> None:
    hub = BroadcastHub(heartbeat_s=0)
    a, b, other = RecordingHandle(), RecordingHandle(), RecordingHandle()
    await hub.register("t1", "a", a)
    await hub.register("t1", "b", b)
    await hub.register("t2", "c", other)

    delivered = await hub.broadcast("t1", {"type": "document-status", "n": 1})

    assert delivered == 2
    assert a.events == b.events == [{"type": "document-status", "n": 1}]
    assert other.events == []


async def test_failed_client_is_dropped_without_affecting_others() -> None:
    hub = BroadcastHub(heartbeat_s=0)
    healthy, broken = RecordingHandle(), RecordingHandle(fail=True)
    await hub.register("t1", "healthy", healthy)
    await hub.register("t1", "broken", broken)

    assert await hub.broadcast("t1", {"type": "chat-status"}) == 1
    assert broken.closed
    assert hub.connection_count("t1") == 1

    assert await hub.broadcast("t1", {"type": "chat-status"}) == 1
    assert len(healthy.events) == 2


async def test_topic_subscriptions_filter_events() -> None:
    hub = BroadcastHub(heartbeat_s=0)
    chat, knowledge = RecordingHandle(), RecordingHandle()
    await hub.register("t1", "chat", chat, topic=TOPIC_CHAT)
    await hub.register("t1", "knowledge", knowledge, topic=TOPIC_KNOWLEDGE)

    await hub.broadcast("t1", {"type": "chat-response"}, topic=TOPIC_CHAT)
    await hub.broadcast("t1", {"type": "document-status"}, topic=TOPIC_KNOWLEDGE)

    assert chat.types() == ["chat-response"]
    assert knowledge.types() == ["document-status"]


async def test_reregistering_a_client_replaces_the_old_handle() -> None:
    hub = BroadcastHub(heartbeat_s=0)
    old, new = RecordingHandle(), RecordingHandle()
    await hub.register("t1", "client", old)
    await hub.register("t1", "client", new)

    await hub.broadcast("t1", {"type": "x"})

    assert old.closed and old.events == []
    assert new.events == [{"type": "x"}]
    # A stale unregister from the replaced handle must not remove the new one.
    assert not await hub.unregister("t1", "client", handle=old)
    assert hub.connection_count("t1") == 1


async def test_events_arrive_in_broadcast_order() -> None:
    hub = BroadcastHub(heartbeat_s=0)
    handle = RecordingHandle()
    await hub.register("t1", "a", handle)

    await asyncio.gather(*(hub.broadcast("t1", {"type": "seq", "n": n}) for n in range(20)))

    assert [event["n"] for event in handle.events] == list(range(20))


async def test_heartbeats_are_sent_on_the_interval() -> None:
    hub = BroadcastHub(heartbeat_s=0.01)
    handle = RecordingHandle()
    await hub.register("t1", "a", handle)
    await asyncio.sleep(0.05)
    await hub.close_all()

    assert "heartbeat" in handle.types()
    assert handle.closed


async def test_queue_connection_overflow_counts_as_disconnect() -> None:
    connection = QueueConnection(max_queue=2)
    await connection.send({"type": "a"})
    await connection.send({"type": "b"})
    with pytest.raises(ConnectionClosedError):
        await connection.send({"type": "c"})

    assert (await connection.next_event(0.1)) == {"type": "a"}


async def test_queue_connection_close_ends_the_reader() -> None:
    connection = QueueConnection()
    assert await connection.next_event(0.01) is None
    await connection.close()
    with pytest.raises(ConnectionClosedError):
        await connection.next_event(0.01)
    with pytest.raises(ConnectionClosedError):
        await connection.send({"type": "late"})

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Protocol


logger = logging.getLogger(__name__)

TOPIC_CHAT = "chat"
TOPIC_KNOWLEDGE = "knowledge"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionClosedError(Exception):
    """Write attempted on a closed or saturated client connection."""


class ConnectionHandle(Protocol):
    async def send(self, event: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class QueueConnection:
    """Client handle backed by a bounded queue drained by the SSE response.

    The response generator is the only reader, so events reach the wire in
    the order they were sent.
    """

    def __init__(self, *, max_queue: int = 256) -> None:
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=max(1, max_queue))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosedError("connection closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull as exc:
            # A client that stops reading is treated as disconnected.
            raise ConnectionClosedError("client backlog full") from exc

    async def next_event(self, timeout: float) -> dict[str, Any] | None:
        # Returns None on timeout; raises once the handle is closed and drained.
        if self._closed and self._queue.empty():
            raise ConnectionClosedError("connection closed")
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if event is None:
            raise ConnectionClosedError("connection closed")
        return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader sees the closed flag once the backlog drains.
            pass


@dataclass
class _Registration:
    handle: ConnectionHandle
    topic: str | None
    heartbeat_task: asyncio.Task | None = None
    registered_at: str = field(default_factory=_utc_now_iso)


class BroadcastHub:
    """In-process registry of live client connections keyed by tenant.

    Best-effort real-time fan-out: clients that are not connected when an
    event fires never see it and must re-fetch resource state on reconnect.
    """

    def __init__(self, *, heartbeat_s: float = 15.0, write_timeout_s: float = 5.0) -> None:
        self._heartbeat_s = heartbeat_s
        self._write_timeout_s = write_timeout_s
        self._connections: dict[str, dict[str, _Registration]] = {}
        # Guards the registry map.
        self._lock = asyncio.Lock()
        # Serializes fan-out per tenant so every handle sees broadcasts in call order.
        self._tenant_locks: dict[str, asyncio.Lock] = {}

    async def register(
        self,
        tenant_id: str,
        client_id: str,
        handle: ConnectionHandle,
        *,
        topic: str | None = None,
    ) -> None:
        replaced: _Registration | None = None
        async with self._lock:
            clients = self._connections.setdefault(tenant_id, {})
            replaced = clients.get(client_id)
            registration = _Registration(handle=handle, topic=topic)
            clients[client_id] = registration
            self._tenant_locks.setdefault(tenant_id, asyncio.Lock())
            if self._heartbeat_s > 0:
                registration.heartbeat_task = asyncio.create_task(
                    self._heartbeat_loop(tenant_id, client_id, handle)
                )
        if replaced is not None:
            await self._dispose(replaced)
        logger.info("stream_registered tenant_id=%s client_id=%s topic=%s", tenant_id, client_id, topic)

    async def unregister(
        self,
        tenant_id: str,
        client_id: str,
        *,
        handle: ConnectionHandle | None = None,
    ) -> bool:
        # When a handle is given, only remove the entry if it still belongs to that handle.
        async with self._lock:
            clients = self._connections.get(tenant_id)
            if not clients or client_id not in clients:
                return False
            registration = clients[client_id]
            if handle is not None and registration.handle is not handle:
                return False
            del clients[client_id]
            if not clients:
                del self._connections[tenant_id]
                self._tenant_locks.pop(tenant_id, None)
        await self._dispose(registration)
        logger.info("stream_unregistered tenant_id=%s client_id=%s", tenant_id, client_id)
        return True

    async def broadcast(
        self,
        tenant_id: str,
        event: dict[str, Any],
        *,
        topic: str | None = None,
    ) -> int:
        """Write ``event`` to every handle of ``tenant_id``; returns the number reached.

        A tenant with no connections is a silent no-op. Handles whose write
        fails are unregistered without affecting the others.
        """
        async with self._lock:
            clients = self._connections.get(tenant_id)
            if not clients:
                return 0
            targets = [
                (client_id, registration)
                for client_id, registration in clients.items()
                if topic is None or registration.topic is None or registration.topic == topic
            ]
            tenant_lock = self._tenant_locks.setdefault(tenant_id, asyncio.Lock())
        delivered = 0
        failed: list[tuple[str, ConnectionHandle]] = []
        async with tenant_lock:
            for client_id, registration in targets:
                try:
                    await asyncio.wait_for(registration.handle.send(event), timeout=self._write_timeout_s)
                    delivered += 1
                except Exception as exc:  # noqa: BLE001 - one broken client must not block the rest.
                    logger.info(
                        "stream_write_failed tenant_id=%s client_id=%s error=%s",
                        tenant_id,
                        client_id,
                        exc,
                    )
                    failed.append((client_id, registration.handle))
        for client_id, handle in failed:
            await self.unregister(tenant_id, client_id, handle=handle)
        return delivered

    def connection_count(self, tenant_id: str | None = None) -> int:
        if tenant_id is not None:
            return len(self._connections.get(tenant_id, {}))
        return sum(len(clients) for clients in self._connections.values())

    async def close_all(self) -> None:
        async with self._lock:
            registrations = [
                registration
                for clients in self._connections.values()
                for registration in clients.values()
            ]
            self._connections.clear()
            self._tenant_locks.clear()
        for registration in registrations:
            await self._dispose(registration)

    async def _heartbeat_loop(self, tenant_id: str, client_id: str, handle: ConnectionHandle) -> None:
        # Periodic writes keep proxies from timing out idle streams and surface dead clients.
        while True:
            await asyncio.sleep(self._heartbeat_s)
            try:
                await asyncio.wait_for(
                    handle.send({"type": "heartbeat", "timestamp": _utc_now_iso()}),
                    timeout=self._write_timeout_s,
                )
            except Exception:  # noqa: BLE001 - any write failure means the client is gone.
                await self.unregister(tenant_id, client_id, handle=handle)
                return

    async def _dispose(self, registration: _Registration) -> None:
        task = registration.heartbeat_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        await registration.handle.close()

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from typing import Any

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError


class FakeClock:
    # Manually advanced UTC clock for driving the retry scheduler.
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class WebhookRecorder:
    """httpx transport that records webhook posts and answers with a scripted status."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.fail_with: Exception | None = None
        self.requests: list[dict[str, Any]] = []
        self.headers: list[httpx.Headers] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.headers.append(request.headers)
        if self.fail_with is not None:
            raise self.fail_with
        return httpx.Response(self.status_code, json={"ok": self.status_code < 400})

    def go_down(self) -> None:
        self.fail_with = httpx.ConnectError("connection refused")

    def come_back(self) -> None:
        self.fail_with = None
        self.status_code = 200


class FakeArqPool:
    """Stand-in for an arq pool: records enqueued jobs or fails like an unreachable broker."""

    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []
        self.down = False

    async def enqueue_job(self, function: str, *args: Any, **kwargs: Any) -> object | None:
        if self.down:
            raise RedisConnectionError("broker unreachable")
        job_id = kwargs.get("_job_id")
        if job_id is not None and any(job["job_id"] == job_id for job in self.jobs):
            return None
        self.jobs.append(
            {
                "function": function,
                "args": args,
                "job_id": job_id,
                "queue_name": kwargs.get("_queue_name"),
            }
        )
        return object()

    async def aclose(self) -> None:
        return None


class FakeRedisBus:
    """In-memory pub/sub with the subset of the redis.asyncio surface the broadcast relay uses."""

    def __init__(self) -> None:
        self.subscribers: list[FakePubSub] = []
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        receivers = [sub for sub in self.subscribers if channel in sub.channels]
        for sub in receivers:
            sub.inbox.append({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self) -> "FakePubSub":
        sub = FakePubSub(self)
        self.subscribers.append(sub)
        return sub

    async def aclose(self) -> None:
        self.closed = True


class FakePubSub:
    def __init__(self, bus: FakeRedisBus) -> None:
        self.bus = bus
        self.channels: set[str] = set()
        self.inbox: list[dict[str, Any]] = []

    async def subscribe(self, channel: str) -> None:
        self.channels.add(channel)

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0) -> dict[str, Any] | None:
        return self.inbox.pop(0) if self.inbox else None

    async def aclose(self) -> None:
        if self in self.bus.subscribers:
            self.bus.subscribers.remove(self)


class RecordingHandle:
    # Connection handle that keeps every event it receives.
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[dict[str, Any]] = []
        self.fail = fail
        self.closed = False

    async def send(self, event: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("client went away")
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True

    def types(self) -> list[str]:
        return [event["type"] for event in self.events]


def embedding(dimension: int, value: float = 0.1) -> list[float]:
    return [value] * dimension

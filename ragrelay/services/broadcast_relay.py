from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ragrelay.core.config import Settings
from ragrelay.services.broadcast import BroadcastHub


logger = logging.getLogger(__name__)


def _redis_from_settings(settings: Settings) -> Redis:
    return Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


class RelayedHub(BroadcastHub):
    """Hub for worker processes, which hold no client connections of their own.

    Every broadcast is published to a Redis channel; the API processes that
    own the SSE connections replay it through their local hub.
    """

    def __init__(self, redis: Redis, *, channel: str) -> None:
        super().__init__(heartbeat_s=0)
        self._redis = redis
        self._channel = channel

    @classmethod
    def from_settings(cls, settings: Settings) -> "RelayedHub":
        return cls(_redis_from_settings(settings), channel=settings.broadcast_channel)

    async def broadcast(
        self,
        tenant_id: str,
        event: dict[str, Any],
        *,
        topic: str | None = None,
    ) -> int:
        message = json.dumps({"tenant_id": tenant_id, "topic": topic, "event": event}, default=str)
        try:
            # Returns how many API processes are subscribed, not how many clients were reached.
            return int(await self._redis.publish(self._channel, message))
        except RedisError as exc:
            # Live updates are best-effort; the stored state is already committed.
            logger.warning(
                "broadcast_relay_publish_failed tenant_id=%s type=%s error=%s",
                tenant_id,
                event.get("type"),
                exc,
            )
            return 0

    async def close_all(self) -> None:
        await super().close_all()
        await self._redis.aclose()


class BroadcastListener:
    """Replays broadcasts relayed by worker processes into the local hub."""

    def __init__(self, hub: BroadcastHub, redis: Redis, *, channel: str, poll_timeout_s: float = 1.0) -> None:
        self._hub = hub
        self._redis = redis
        self._channel = channel
        self._poll_timeout_s = poll_timeout_s
        self._pubsub = None
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, hub: BroadcastHub, settings: Settings) -> "BroadcastListener":
        return cls(hub, _redis_from_settings(settings), channel=settings.broadcast_channel)

    async def subscribe(self) -> None:
        if self._pubsub is None:
            pubsub = self._redis.pubsub()
            await pubsub.subscribe(self._channel)
            self._pubsub = pubsub
            logger.info("broadcast_relay_subscribed channel=%s", self._channel)

    async def poll_once(self) -> int:
        """Replay at most one relayed event; returns the number of local clients reached."""
        await self.subscribe()
        message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout_s)
        if not message or message.get("type") != "message":
            return 0
        try:
            envelope = json.loads(message["data"])
            tenant_id = str(envelope["tenant_id"])
            event = dict(envelope["event"])
        except (KeyError, TypeError, ValueError):
            logger.warning("broadcast_relay_message_malformed channel=%s", self._channel)
            return 0
        return await self._hub.broadcast(tenant_id, event, topic=envelope.get("topic"))

    async def run_forever(self) -> None:
        while True:
            try:
                await self.poll_once()
            except RedisError as exc:
                # Drop the subscription and resubscribe once Redis is reachable again.
                logger.warning("broadcast_relay_poll_failed channel=%s error=%s", self._channel, exc)
                await self._reset()
                await asyncio.sleep(self._poll_timeout_s)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._reset()
        await self._redis.aclose()

    async def _reset(self) -> None:
        pubsub = self._pubsub
        self._pubsub = None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()
        except RedisError as exc:
            logger.info("broadcast_relay_close_failed channel=%s error=%s", self._channel, exc)

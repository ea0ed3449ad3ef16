from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from redis.exceptions import RedisError

from ragrelay.core.config import Settings
from ragrelay.core.errors import TransientDeliveryError
from ragrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION_NAME = "broker.queue"
# arq function name the external processing service's worker registers.
OUTBOUND_JOB_NAME = "process_outbound_event"


class QueueTransport:
    """Publishes outbound events onto the durable broker queue via arq."""

    name = "queue"

    def __init__(
        self,
        *,
        redis_url: str,
        queue_name: str,
        timeout_ms: int,
        pool: ArqRedis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._queue_name = queue_name
        self._timeout_s = max(0.2, timeout_ms / 1000.0)
        self._pool = pool
        # An injected pool is used as-is; otherwise one is created lazily per event loop.
        self._pool_injected = pool is not None
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, *, pool: ArqRedis | None = None) -> "QueueTransport":
        return cls(
            redis_url=settings.redis_url,
            queue_name=settings.outbound_queue_name,
            timeout_ms=settings.webhook_timeout_ms,
            pool=pool,
        )

    @property
    def queue_name(self) -> str:
        return self._queue_name

    async def _get_pool(self) -> ArqRedis:
        # Cache the arq pool per event loop to avoid reconnect churn.
        if self._pool_injected and self._pool is not None:
            return self._pool
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop is current_loop:
            return self._pool
        async with self._lock:
            if self._pool is None or self._pool_loop is not current_loop:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self._redis_url),
                    default_queue_name=self._queue_name,
                )
                self._pool_loop = current_loop
        return self._pool

    async def send(self, payload: dict[str, Any]) -> None:
        start = time.monotonic()
        try:
            pool = await asyncio.wait_for(self._get_pool(), timeout=self._timeout_s)
            job = await asyncio.wait_for(
                pool.enqueue_job(
                    OUTBOUND_JOB_NAME,
                    payload,
                    _job_id=payload.get("event_id"),
                    _queue_name=self._queue_name,
                ),
                timeout=self._timeout_s,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            record_external_call(
                integration=INTEGRATION_NAME,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise TransientDeliveryError(f"Queue publish failed: {exc!r}") from exc
        record_external_call(
            integration=INTEGRATION_NAME,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        if job is None:
            # arq returns None when the job id is already queued; the event is still accepted.
            logger.info("queue_publish_duplicate event_id=%s", payload.get("event_id"))

    async def close(self) -> None:
        if self._pool is not None and not self._pool_injected:
            await self._pool.aclose()
            self._pool = None
            self._pool_loop = None

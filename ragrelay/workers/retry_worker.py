from __future__ import annotations

import logging

from arq.connections import RedisSettings

from ragrelay.core.config import get_settings
from ragrelay.core.logging import configure_logging
from ragrelay.persistence.db import SessionLocal
from ragrelay.services.broadcast_relay import RelayedHub
from ragrelay.services.runtime import build_runtime


logger = logging.getLogger(__name__)


async def retry_delivery(ctx, delivery_id: str) -> str:
    # Operator hook: attempt one due record now instead of waiting for the next sweep.
    return await ctx["runtime"].scheduler.attempt(delivery_id)


async def _startup(ctx) -> None:
    # Own the sweep here when the API runs with RETRY_SCHEDULER_ENABLED=false.
    configure_logging()
    # Exhausted deliveries fail resources here; the API relays those transitions to its streams.
    runtime = build_runtime(session_factory=SessionLocal, hub=RelayedHub.from_settings(get_settings()))
    runtime.scheduler.start()
    ctx["runtime"] = runtime
    logger.info("retry_worker_started interval_s=%s", runtime.settings.retry_interval_s)


async def _shutdown(ctx) -> None:
    runtime = ctx.get("runtime")
    if runtime:
        await runtime.stop()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = f"{settings.outbound_queue_name}.retries"
    max_tries = 1
    functions = [retry_delivery]
    on_startup = _startup
    on_shutdown = _shutdown

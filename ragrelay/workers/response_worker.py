from __future__ import annotations

import logging
from typing import Any

from arq.connections import RedisSettings

from ragrelay.core.config import get_settings
from ragrelay.core.logging import configure_logging
from ragrelay.persistence.db import SessionLocal
from ragrelay.services.broadcast_relay import RelayedHub
from ragrelay.services.runtime import build_runtime


logger = logging.getLogger(__name__)


async def handle_chat_response(ctx, message: Any) -> str:
    # Poison messages come back as "discarded" and are acked; only infrastructure errors raise and retry.
    async with SessionLocal() as session:
        outcome = await ctx["runtime"].callbacks.consume_queue_reply(session, message)
    logger.info("chat_response_consumed job_id=%s outcome=%s", ctx.get("job_id"), outcome)
    return outcome


async def _startup(ctx) -> None:
    configure_logging()
    # The worker reuses the API's service graph but never sweeps retries itself.
    # Its broadcasts go over Redis to the API processes that hold the streams.
    settings = get_settings()
    ctx["runtime"] = build_runtime(session_factory=SessionLocal, hub=RelayedHub.from_settings(settings))


async def _shutdown(ctx) -> None:
    runtime = ctx.get("runtime")
    if runtime:
        await runtime.stop()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.response_queue_name
    max_tries = 5
    functions = [handle_chat_response]
    on_startup = _startup
    on_shutdown = _shutdown

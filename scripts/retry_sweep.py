from __future__ import annotations

import argparse
import asyncio
import logging

from ragrelay.core.config import get_settings
from ragrelay.core.logging import configure_logging
from ragrelay.persistence.db import SessionLocal
from ragrelay.services.broadcast_relay import RelayedHub
from ragrelay.services.runtime import build_runtime


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the webhook retry sweep")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    return parser


async def _main(args: argparse.Namespace) -> None:
    configure_logging()
    # Resources failed on exhaustion are announced to the API streams over Redis.
    runtime = build_runtime(session_factory=SessionLocal, hub=RelayedHub.from_settings(get_settings()))
    try:
        if args.once:
            result = await runtime.scheduler.sweep()
            logger.info(
                "retry_sweep_finished claimed=%s succeeded=%s rescheduled=%s failed=%s skipped=%s",
                result.claimed,
                result.succeeded,
                result.rescheduled,
                result.failed,
                result.skipped,
            )
            return
        # Boot a dedicated sweep loop so retries continue when the API runs without its scheduler.
        await runtime.scheduler.run_forever()
    finally:
        await runtime.stop()


if __name__ == "__main__":
    asyncio.run(_main(_build_parser().parse_args()))

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.core.config import Settings
from ragrelay.core.errors import TerminalDeliveryError, TransientDeliveryError
from ragrelay.persistence.repos import deliveries as deliveries_repo
from ragrelay.services.delivery.webhook import WebhookTransport
from ragrelay.services.events import serialize_payload
from ragrelay.services.telemetry import increment_counter
from ragrelay.services.tokens import TokenAuthority


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
# Called once per delivery whose retry budget is spent.
ExhaustionHandler = Callable[[dict[str, Any], TerminalDeliveryError], Awaitable[None]]

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RESCHEDULED = "rescheduled"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"

# Keeps 2**n bounded; the cap is reached long before this for any sane base delay.
_MAX_EXPONENT = 32
# How long a claimed record stays invisible to other sweeps; a crashed attempt is resumed after it.
CLAIM_LEASE = timedelta(minutes=5)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_ms(retry_count: int, *, base_ms: int, max_ms: int) -> int:
    # delay(n) = min(base * 2^n, cap): monotonic in n and never above the cap.
    base = max(1, int(base_ms))
    cap = max(base, int(max_ms))
    exponent = min(_MAX_EXPONENT, max(0, int(retry_count)))
    return min(cap, base * (2**exponent))


@dataclass
class SweepResult:
    claimed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: str) -> None:
        if outcome != OUTCOME_SKIPPED:
            self.claimed += 1
        setattr(self, outcome, getattr(self, outcome) + 1)


class RetryScheduler:
    """Persistent retry queue for the synchronous webhook transport.

    Each sweep claims due records with one conditional update, re-sends them,
    and either closes them or pushes ``next_retry_at`` out with exponential
    backoff. A crash between claim and outcome leaves the record in
    ``retrying`` with its count already spent; a sweep resumes it once the
    claim lease runs out, or dead-letters it if that claim was the last one.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession],
        transport: WebhookTransport,
        tokens: TokenAuthority,
        settings: Settings,
        clock: Clock | None = None,
        on_exhausted: ExhaustionHandler | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._transport = transport
        self._tokens = tokens
        self._clock = clock or _utc_now
        self._on_exhausted = on_exhausted
        self._interval_s = max(0.05, float(settings.retry_interval_s))
        self._batch_size = max(1, int(settings.retry_batch_size))
        self._max_retries = max(0, int(settings.retry_max_retries))
        self._base_delay_ms = int(settings.retry_base_delay_ms)
        self._max_delay_ms = int(settings.retry_max_delay_ms)
        self._task: asyncio.Task | None = None

    def delay_for(self, retry_count: int) -> timedelta:
        return timedelta(
            milliseconds=retry_delay_ms(retry_count, base_ms=self._base_delay_ms, max_ms=self._max_delay_ms)
        )

    async def schedule(
        self,
        payload: dict[str, Any],
        *,
        tenant_id: str,
        delivery_type: str,
        error: str,
        max_retries: int | None = None,
    ) -> str:
        """Persist a failed first attempt so the sweep can take over; returns the record id."""
        now = self._clock()
        delivery_id = uuid4().hex
        async with self._session_factory() as session:
            await deliveries_repo.create_delivery(
                session,
                delivery_id=delivery_id,
                tenant_id=tenant_id,
                delivery_type=delivery_type,
                payload=serialize_payload(payload),
                max_retries=self._max_retries if max_retries is None else max_retries,
                next_retry_at=now + self.delay_for(0),
                last_error=error,
                now=now,
            )
            await session.commit()
        increment_counter("delivery.retry_scheduled")
        logger.info(
            "delivery_retry_scheduled delivery_id=%s tenant_id=%s delivery_type=%s error=%s",
            delivery_id,
            tenant_id,
            delivery_type,
            error,
        )
        return delivery_id

    async def sweep(self) -> SweepResult:
        result = SweepResult()
        async with self._session_factory() as session:
            due_ids = await deliveries_repo.list_due_delivery_ids(
                session, now=self._clock(), limit=self._batch_size
            )
        for delivery_id in due_ids:
            result.record(await self.attempt(delivery_id))
        result.failed += await self._fail_stalled_final_attempts()
        if result.claimed or result.failed:
            logger.info(
                "delivery_sweep_finished claimed=%s succeeded=%s rescheduled=%s failed=%s",
                result.claimed,
                result.succeeded,
                result.rescheduled,
                result.failed,
            )
        return result

    async def attempt(self, delivery_id: str) -> str:
        async with self._session_factory() as session:
            now = self._clock()
            claimed = await deliveries_repo.claim_delivery(
                session, delivery_id=delivery_id, now=now, lease_until=now + CLAIM_LEASE
            )
            await session.commit()
            if not claimed:
                # Another sweep won the claim, or the record is no longer due.
                return OUTCOME_SKIPPED
            record = await deliveries_repo.get_delivery(session, delivery_id)
            if record is None:
                return OUTCOME_SKIPPED

            try:
                payload = json.loads(record.payload)
            except ValueError:
                await deliveries_repo.mark_delivery_failed(
                    session, delivery_id=delivery_id, now=self._clock(), last_error="payload is not valid JSON"
                )
                await session.commit()
                logger.error("delivery_payload_corrupt delivery_id=%s", delivery_id)
                return OUTCOME_FAILED

            payload = await self._refresh_callback_token(session, record.tenant_id, payload)
            try:
                await self._transport.send(payload)
            except TransientDeliveryError as exc:
                error = str(exc)
            except Exception as exc:  # noqa: BLE001 - any send fault counts as a failed attempt.
                logger.exception("delivery_attempt_crashed delivery_id=%s", delivery_id)
                error = repr(exc)
            else:
                await deliveries_repo.mark_delivery_succeeded(session, delivery_id=delivery_id, now=self._clock())
                await session.commit()
                increment_counter("delivery.retry_succeeded")
                logger.info(
                    "delivery_retry_succeeded delivery_id=%s attempt=%s", delivery_id, record.retry_count
                )
                return OUTCOME_SUCCEEDED

            now = self._clock()
            if record.retry_count >= record.max_retries:
                await deliveries_repo.mark_delivery_failed(
                    session, delivery_id=delivery_id, now=now, last_error=error
                )
                await session.commit()
                increment_counter("delivery.dead_lettered")
                logger.error(
                    "delivery_retries_exhausted delivery_id=%s tenant_id=%s attempts=%s error=%s",
                    delivery_id,
                    record.tenant_id,
                    record.retry_count,
                    error,
                )
                await self._exhausted(payload, delivery_id, error)
                return OUTCOME_FAILED

            next_retry_at = now + self.delay_for(record.retry_count)
            await deliveries_repo.reschedule_delivery(
                session,
                delivery_id=delivery_id,
                now=now,
                next_retry_at=next_retry_at,
                last_error=error,
            )
            await session.commit()
            increment_counter("delivery.retry_rescheduled")
            logger.warning(
                "delivery_retry_failed delivery_id=%s attempt=%s next_retry_at=%s error=%s",
                delivery_id,
                record.retry_count,
                next_retry_at.isoformat(),
                error,
            )
            return OUTCOME_RESCHEDULED

    async def _fail_stalled_final_attempts(self) -> int:
        """Dead-letter records whose last allowed attempt never reported back.

        Ordinary crashed claims are resumed by the due query once the lease runs
        out; a crashed final claim has no budget left, so it is failed here.
        """
        error = "final attempt did not complete before its claim lease expired"
        exhausted: list[tuple[str, str]] = []
        async with self._session_factory() as session:
            stalled_ids = await deliveries_repo.list_stalled_final_ids(
                session, now=self._clock(), limit=self._batch_size
            )
            for delivery_id in stalled_ids:
                if not await deliveries_repo.fail_stalled_delivery(
                    session, delivery_id=delivery_id, now=self._clock(), last_error=error
                ):
                    continue
                await session.commit()
                record = await deliveries_repo.get_delivery(session, delivery_id)
                if record is None:
                    continue
                increment_counter("delivery.dead_lettered")
                logger.error(
                    "delivery_final_attempt_stalled delivery_id=%s tenant_id=%s attempts=%s",
                    delivery_id,
                    record.tenant_id,
                    record.retry_count,
                )
                exhausted.append((delivery_id, record.payload))
        # Resource bookkeeping runs in its own sessions once this one is closed.
        for delivery_id, raw_payload in exhausted:
            try:
                payload = json.loads(raw_payload)
            except ValueError:
                logger.error("delivery_payload_corrupt delivery_id=%s", delivery_id)
                continue
            await self._exhausted(payload, delivery_id, error)
        return len(exhausted)

    async def _refresh_callback_token(
        self, session: AsyncSession, tenant_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        # A resource may have been re-tokened since the record was written; always send the live token.
        resource_id = payload.get("resource_id")
        if not resource_id:
            return payload
        current = await self._tokens.current_resource_token(session, tenant_id, str(resource_id))
        if current and current != payload.get("callback_token"):
            return {**payload, "callback_token": current}
        return payload

    async def _exhausted(self, payload: dict[str, Any], delivery_id: str, error: str) -> None:
        if self._on_exhausted is None:
            return
        terminal = TerminalDeliveryError(f"Delivery {delivery_id} exhausted retries: {error}")
        try:
            await self._on_exhausted(payload, terminal)
        except Exception:  # noqa: BLE001 - the record is already terminal; keep the sweep going.
            logger.exception("delivery_exhaustion_handler_failed delivery_id=%s", delivery_id)

    async def run_forever(self) -> None:
        # Sweep on a fixed cadence; one failed sweep never stops the loop.
        while True:
            try:
                await self.sweep()
            except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in logs.
                logger.exception("delivery retry sweep failed")
            await asyncio.sleep(self._interval_s)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

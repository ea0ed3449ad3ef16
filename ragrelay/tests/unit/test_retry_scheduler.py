from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select, update

from ragrelay.core.errors import TerminalDeliveryError
from ragrelay.domain.models import DeliveryRecord
from ragrelay.domain.states import DELIVERY_FAILED, DELIVERY_PENDING, DELIVERY_RETRYING, DELIVERY_SUCCEEDED
from ragrelay.persistence.db import SessionLocal
from ragrelay.persistence.repos import deliveries as deliveries_repo
from ragrelay.services.delivery.scheduler import RetryScheduler, retry_delay_ms
from ragrelay.services.delivery.webhook import WebhookTransport
from ragrelay.services.tokens import TokenAuthority
from ragrelay.tests.utils.fakes import FakeClock, WebhookRecorder


def _scheduler(settings, webhook: WebhookRecorder, clock: FakeClock, exhausted: list | None = None) -> RetryScheduler:
    async def _on_exhausted(payload, error: TerminalDeliveryError) -> None:
        if exhausted is not None:
            exhausted.append((payload, error))

    return RetryScheduler(
        session_factory=SessionLocal,
        transport=WebhookTransport(url="http://automation.test/webhook", authorization=None, timeout_ms=1000, transport=webhook.transport),
        tokens=TokenAuthority(),
        settings=settings,
        clock=clock,
        on_exhausted=_on_exhausted,
    )


async def _record(delivery_id: str) -> DeliveryRecord:
    async with SessionLocal() as session:
        record = await deliveries_repo.get_delivery(session, delivery_id)
    assert record is not None
    return record


def test_retry_delay_doubles_until_capped() -> None:
    delays = [retry_delay_ms(n, base_ms=60_000, max_ms=3_600_000) for n in range(8)]
    assert delays[:4] == [60_000, 120_000, 240_000, 480_000]
    assert max(delays) == 3_600_000
    assert retry_delay_ms(500, base_ms=60_000, max_ms=3_600_000) == 3_600_000


async def test_failed_attempts_back_off_exponentially(settings, clock) -> None:
    webhook = WebhookRecorder()
    webhook.go_down()
    scheduler = _scheduler(settings, webhook, clock)
    start = clock()

    delivery_id = await scheduler.schedule(
        {"resource_id": "doc-1", "tenant_id": "t1"},
        tenant_id="t1",
        delivery_type="document-processing",
        error="connection refused",
    )
    record = await _record(delivery_id)
    assert record.status == DELIVERY_PENDING
    assert record.retry_count == 0
    assert record.next_retry_at == start + timedelta(seconds=60)

    # Not due yet.
    assert (await scheduler.sweep()).claimed == 0

    clock.advance(seconds=60)
    result = await scheduler.sweep()
    assert result.rescheduled == 1
    record = await _record(delivery_id)
    assert record.retry_count == 1
    assert record.next_retry_at == clock() + timedelta(seconds=120)
    assert "unreachable" in (record.last_error or "")


async def test_delivery_succeeds_once_webhook_recovers(settings, clock) -> None:
    webhook = WebhookRecorder()
    webhook.go_down()
    scheduler = _scheduler(settings, webhook, clock)
    delivery_id = await scheduler.schedule(
        {"resource_id": "doc-1", "tenant_id": "t1"}, tenant_id="t1", delivery_type="document-processing", error="down"
    )

    webhook.come_back()
    clock.advance(seconds=61)
    result = await scheduler.sweep()

    assert result.succeeded == 1
    record = await _record(delivery_id)
    assert record.status == DELIVERY_SUCCEEDED
    assert webhook.requests[-1]["resource_id"] == "doc-1"
    # Terminal records are never picked up again.
    clock.advance(hours=2)
    assert (await scheduler.sweep()).claimed == 0


async def test_retries_exhaust_into_failed(settings, clock) -> None:
    webhook = WebhookRecorder(status_code=503)
    exhausted: list = []
    scheduler = _scheduler(settings, webhook, clock, exhausted)
    delivery_id = await scheduler.schedule(
        {"resource_id": "doc-9", "tenant_id": "t1"}, tenant_id="t1", delivery_type="document-processing", error="503"
    )

    outcomes = []
    for _ in range(settings.retry_max_retries):
        clock.advance(hours=2)
        outcomes.append(await scheduler.attempt(delivery_id))

    assert outcomes == ["rescheduled", "rescheduled", "failed"]
    record = await _record(delivery_id)
    assert record.status == DELIVERY_FAILED
    assert record.retry_count == settings.retry_max_retries
    assert len(exhausted) == 1
    payload, error = exhausted[0]
    assert payload["resource_id"] == "doc-9"
    assert isinstance(error, TerminalDeliveryError)

    clock.advance(hours=2)
    assert await scheduler.attempt(delivery_id) == "skipped"


async def test_only_one_claim_wins(settings, clock) -> None:
    scheduler = _scheduler(settings, WebhookRecorder(), clock)
    delivery_id = await scheduler.schedule(
        {"resource_id": "doc-1"}, tenant_id="t1", delivery_type="document-processing", error="down"
    )
    clock.advance(seconds=60)

    lease_until = clock() + timedelta(minutes=5)

    async with SessionLocal() as session:
        first = await deliveries_repo.claim_delivery(
            session, delivery_id=delivery_id, now=clock(), lease_until=lease_until
        )
        await session.commit()
    async with SessionLocal() as session:
        second = await deliveries_repo.claim_delivery(
            session, delivery_id=delivery_id, now=clock(), lease_until=lease_until
        )
        await session.commit()

    assert first is True
    assert second is False
    record = await _record(delivery_id)
    assert record.retry_count == 1
    assert record.next_retry_at == lease_until

    # Once the lease lapses an unfinished claim is picked up again.
    clock.advance(minutes=6)
    assert await scheduler.attempt(delivery_id) == "succeeded"


async def test_crashed_final_attempt_is_dead_lettered(settings, clock) -> None:
    exhausted: list = []
    scheduler = _scheduler(settings, WebhookRecorder(), clock, exhausted)
    delivery_id = await scheduler.schedule(
        {"resource_id": "doc-7", "tenant_id": "t1"}, tenant_id="t1", delivery_type="document-processing", error="down"
    )
    async with SessionLocal() as session:
        await session.execute(
            update(DeliveryRecord)
            .where(DeliveryRecord.id == delivery_id)
            .values(retry_count=settings.retry_max_retries - 1)
        )
        await session.commit()
    clock.advance(seconds=60)

    # The final claim is taken, then the attempting process dies before recording an outcome.
    async with SessionLocal() as session:
        assert await deliveries_repo.claim_delivery(
            session, delivery_id=delivery_id, now=clock(), lease_until=clock() + timedelta(minutes=5)
        )
        await session.commit()

    # Still leased: nobody touches it.
    result = await scheduler.sweep()
    assert (result.claimed, result.failed) == (0, 0)
    assert (await _record(delivery_id)).status == DELIVERY_RETRYING

    clock.advance(minutes=6)
    result = await scheduler.sweep()
    assert result.failed == 1
    record = await _record(delivery_id)
    assert record.status == DELIVERY_FAILED
    assert "claim lease" in (record.last_error or "")
    assert [payload["resource_id"] for payload, _ in exhausted] == ["doc-7"]

    # Terminal records are left alone by later sweeps.
    clock.advance(hours=50)
    assert (await scheduler.sweep()).failed == 0
    assert len(exhausted) == 1


async def test_attempt_sends_the_current_resource_token(settings, clock) -> None:
    webhook = WebhookRecorder()
    scheduler = _scheduler(settings, webhook, clock)
    tokens = TokenAuthority()
    async with SessionLocal() as session:
        stale = await tokens.mint_resource_token(session, "t1", "doc-1", resource_type="document")
        fresh = await tokens.mint_resource_token(session, "t1", "doc-1", resource_type="document")
        await session.commit()

    delivery_id = await scheduler.schedule(
        {"resource_id": "doc-1", "tenant_id": "t1", "callback_token": stale},
        tenant_id="t1",
        delivery_type="document-processing",
        error="down",
    )
    clock.advance(seconds=60)
    assert await scheduler.attempt(delivery_id) == "succeeded"
    assert webhook.requests[-1]["callback_token"] == fresh


async def test_due_records_are_listed_oldest_first(settings, clock) -> None:
    scheduler = _scheduler(settings, WebhookRecorder(), clock)
    first = await scheduler.schedule({"resource_id": "a"}, tenant_id="t1", delivery_type="x", error="e")
    clock.advance(seconds=5)
    second = await scheduler.schedule({"resource_id": "b"}, tenant_id="t1", delivery_type="x", error="e")
    clock.advance(seconds=120)

    async with SessionLocal() as session:
        due = await deliveries_repo.list_due_delivery_ids(session, now=clock(), limit=10)
        rows = (await session.execute(select(DeliveryRecord))).scalars().all()

    assert due == [first, second]
    assert len(rows) == 2

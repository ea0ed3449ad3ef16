from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.domain.models import DeliveryRecord
from ragrelay.domain.states import (
    DELIVERY_DUE_STATES,
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    DELIVERY_RETRYING,
    DELIVERY_SUCCEEDED,
    DELIVERY_TERMINAL_STATES,
)
from ragrelay.persistence.guards import tenant_predicate


async def create_delivery(
    session: AsyncSession,
    *,
    delivery_id: str,
    tenant_id: str,
    delivery_type: str,
    payload: str,
    max_retries: int,
    next_retry_at: datetime,
    last_error: str | None,
    now: datetime,
) -> DeliveryRecord:
    record = DeliveryRecord(
        id=delivery_id,
        tenant_id=tenant_id,
        delivery_type=delivery_type,
        payload=payload,
        status=DELIVERY_PENDING,
        retry_count=0,
        max_retries=max(0, max_retries),
        next_retry_at=next_retry_at,
        last_error=last_error,
        created_at=now,
        updated_at=now,
    )
    session.add(record)
    return record


async def list_due_delivery_ids(session: AsyncSession, *, now: datetime, limit: int) -> list[str]:
    # Oldest-due first so a backlog drains in the order it accumulated.
    result = await session.execute(
        select(DeliveryRecord.id)
        .where(
            DeliveryRecord.status.in_(DELIVERY_DUE_STATES),
            DeliveryRecord.next_retry_at <= now,
            DeliveryRecord.retry_count < DeliveryRecord.max_retries,
        )
        .order_by(DeliveryRecord.next_retry_at.asc(), DeliveryRecord.created_at.asc())
        .limit(max(1, limit))
    )
    return [str(row) for row in result.scalars().all()]


async def list_stalled_final_ids(session: AsyncSession, *, now: datetime, limit: int) -> list[str]:
    # Final attempts whose claim lease ran out: the attempting process died before recording an outcome.
    result = await session.execute(
        select(DeliveryRecord.id)
        .where(
            DeliveryRecord.status == DELIVERY_RETRYING,
            DeliveryRecord.next_retry_at <= now,
            DeliveryRecord.retry_count >= DeliveryRecord.max_retries,
        )
        .order_by(DeliveryRecord.next_retry_at.asc())
        .limit(max(1, limit))
    )
    return [str(row) for row in result.scalars().all()]


async def fail_stalled_delivery(
    session: AsyncSession, *, delivery_id: str, now: datetime, last_error: str
) -> bool:
    # Conditional on the same predicate so a concurrent sweep fails the record only once.
    result = await session.execute(
        update(DeliveryRecord)
        .where(
            DeliveryRecord.id == delivery_id,
            DeliveryRecord.status == DELIVERY_RETRYING,
            DeliveryRecord.next_retry_at <= now,
            DeliveryRecord.retry_count >= DeliveryRecord.max_retries,
        )
        .values(status=DELIVERY_FAILED, last_error=last_error, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_delivery(
    session: AsyncSession, *, delivery_id: str, now: datetime, lease_until: datetime
) -> bool:
    # Single conditional update: only one sweep can win the due -> retrying transition.
    # Moving next_retry_at to the lease end keeps a claimed record out of concurrent sweeps.
    result = await session.execute(
        update(DeliveryRecord)
        .where(
            DeliveryRecord.id == delivery_id,
            DeliveryRecord.status.in_(DELIVERY_DUE_STATES),
            DeliveryRecord.next_retry_at <= now,
            DeliveryRecord.retry_count < DeliveryRecord.max_retries,
        )
        .values(
            status=DELIVERY_RETRYING,
            retry_count=DeliveryRecord.retry_count + 1,
            next_retry_at=lease_until,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_delivery(session: AsyncSession, delivery_id: str) -> DeliveryRecord | None:
    result = await session.execute(
        select(DeliveryRecord)
        .where(DeliveryRecord.id == delivery_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _finish(
    session: AsyncSession,
    *,
    delivery_id: str,
    now: datetime,
    **values: object,
) -> bool:
    # Terminal records are never rewritten, whatever a late attempt reports.
    result = await session.execute(
        update(DeliveryRecord)
        .where(
            DeliveryRecord.id == delivery_id,
            DeliveryRecord.status.not_in(DELIVERY_TERMINAL_STATES),
        )
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_delivery_succeeded(session: AsyncSession, *, delivery_id: str, now: datetime) -> bool:
    return await _finish(session, delivery_id=delivery_id, now=now, status=DELIVERY_SUCCEEDED)


async def mark_delivery_failed(
    session: AsyncSession, *, delivery_id: str, now: datetime, last_error: str
) -> bool:
    return await _finish(
        session,
        delivery_id=delivery_id,
        now=now,
        status=DELIVERY_FAILED,
        last_error=last_error,
    )


async def reschedule_delivery(
    session: AsyncSession,
    *,
    delivery_id: str,
    now: datetime,
    next_retry_at: datetime,
    last_error: str,
) -> bool:
    return await _finish(
        session,
        delivery_id=delivery_id,
        now=now,
        status=DELIVERY_PENDING,
        next_retry_at=next_retry_at,
        last_error=last_error,
    )


async def list_deliveries(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    limit: int = 50,
) -> list[DeliveryRecord]:
    stmt = select(DeliveryRecord).where(tenant_predicate(DeliveryRecord, tenant_id))
    if status:
        stmt = stmt.where(DeliveryRecord.status == status)
    result = await session.execute(
        stmt.order_by(DeliveryRecord.created_at.desc(), DeliveryRecord.id).limit(max(1, limit))
    )
    return list(result.scalars().all())


async def latest_delivery_for_resource(
    session: AsyncSession, *, tenant_id: str, resource_id: str
) -> DeliveryRecord | None:
    # Payloads are serialized with compact separators, so the resource id appears verbatim.
    marker = f'"resource_id":"{resource_id}"'
    result = await session.execute(
        select(DeliveryRecord)
        .where(
            tenant_predicate(DeliveryRecord, tenant_id),
            DeliveryRecord.payload.contains(marker, autoescape=True),
        )
        .order_by(DeliveryRecord.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()

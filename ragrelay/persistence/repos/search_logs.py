from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.domain.models import VectorSearchLog
from ragrelay.persistence.guards import tenant_predicate


async def add_search_log(
    session: AsyncSession,
    *,
    tenant_id: str,
    result_count: int,
    threshold: float | None,
    limit: int | None,
    execution_time_ms: int,
    filters: dict[str, Any] | None,
    error_code: str | None = None,
    error_message: str | None = None,
) -> VectorSearchLog:
    row = VectorSearchLog(
        tenant_id=tenant_id,
        result_count=result_count,
        threshold=threshold,
        result_limit=limit,
        execution_time_ms=execution_time_ms,
        filters_json=filters,
        error_code=error_code,
        error_message=error_message,
    )
    session.add(row)
    return row


async def list_search_logs(session: AsyncSession, *, tenant_id: str, limit: int = 50) -> list[VectorSearchLog]:
    result = await session.execute(
        select(VectorSearchLog)
        .where(tenant_predicate(VectorSearchLog, tenant_id))
        .order_by(VectorSearchLog.created_at.desc())
        .limit(max(1, limit))
    )
    return list(result.scalars().all())

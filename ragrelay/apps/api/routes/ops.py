from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.apps.api.deps import Caller, get_caller, get_db, get_runtime
from ragrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ragrelay.core.errors import ValidationError
from ragrelay.domain.states import DELIVERY_DUE_STATES, DELIVERY_TERMINAL_STATES
from ragrelay.persistence.repos import deliveries as deliveries_repo
from ragrelay.persistence.repos import search_logs as search_logs_repo
from ragrelay.services.runtime import RelayRuntime
from ragrelay.services.telemetry import (
    counters_snapshot,
    external_call_stats,
    p95_latency,
    stream_duration_stats,
)


router = APIRouter(prefix="/rag", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)

_DELIVERY_STATES = set(DELIVERY_DUE_STATES) | set(DELIVERY_TERMINAL_STATES)


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


@router.get("/deliveries")
async def list_deliveries(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if status is not None and status not in _DELIVERY_STATES:
        raise ValidationError(f"Unknown delivery status: {status}", hint="one of " + ", ".join(sorted(_DELIVERY_STATES)))
    records = await deliveries_repo.list_deliveries(db, tenant_id=caller.tenant_id, status=status, limit=limit)
    return {
        "deliveries": [
            {
                "id": record.id,
                "delivery_type": record.delivery_type,
                "status": record.status,
                "retry_count": record.retry_count,
                "max_retries": record.max_retries,
                "next_retry_at": _iso(record.next_retry_at),
                "last_error": record.last_error,
                "created_at": _iso(record.created_at),
                "updated_at": _iso(record.updated_at),
            }
            for record in records
        ]
    }


@router.get("/search-logs")
async def list_search_logs(
    limit: int = Query(default=50, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await search_logs_repo.list_search_logs(db, tenant_id=caller.tenant_id, limit=limit)
    return {
        "logs": [
            {
                "id": str(row.id),
                "result_count": row.result_count,
                "threshold": row.threshold,
                "limit": row.result_limit,
                "execution_time_ms": row.execution_time_ms,
                "filters": row.filters_json,
                "error_code": row.error_code,
                "error_message": row.error_message,
                "created_at": _iso(row.created_at),
            }
            for row in rows
        ]
    }


@router.get("/ops/metrics")
async def ops_metrics(
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    # Process-local counters; each API replica reports its own view.
    return {
        "p95_latency_ms": {
            "5m": p95_latency(300),
            "1h": p95_latency(3600),
        },
        "external_calls": external_call_stats(3600),
        "streams": {
            "open": runtime.hub.connection_count(),
            "open_for_tenant": runtime.hub.connection_count(caller.tenant_id),
            "duration_ms": stream_duration_stats(),
        },
        "publishes_in_flight": runtime.dispatcher.pending,
        "counters": counters_snapshot(),
    }

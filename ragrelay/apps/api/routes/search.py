from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.apps.api.deps import Caller, get_caller, get_db, get_runtime
from ragrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES, SEARCH_ERROR_RESPONSES
from ragrelay.services.runtime import RelayRuntime
from ragrelay.services.search import SearchRequest
from ragrelay.services.tokens import bearer_token


router = APIRouter(prefix="/rag", tags=["search"], responses=DEFAULT_ERROR_RESPONSES)


class VectorSearchBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str = Field(min_length=1)
    embedding: list[float] = Field(validation_alias=AliasChoices("embedding", "query_embedding"))
    limit: int | None = None
    threshold: float | None = None
    filters: dict[str, Any] = Field(default_factory=dict)
    message_id: str | None = None


@router.post("/tenant-token")
async def rotate_tenant_token(
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Rotation invalidates the previous token immediately.
    token = await runtime.tokens.mint_tenant_token(db, caller.tenant_id)
    await db.commit()
    return {"success": True, "tenant_id": caller.tenant_id, "token": token}


@router.post("/vector-search", responses=SEARCH_ERROR_RESPONSES)
async def vector_search(
    payload: VectorSearchBody,
    x_callback_token: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    outcome = await runtime.search.search(
        db,
        SearchRequest(
            tenant_id=payload.tenant_id,
            embedding=payload.embedding,
            limit=payload.limit,
            threshold=payload.threshold,
            filters=payload.filters,
            message_id=payload.message_id,
        ),
        x_callback_token or bearer_token(authorization),
    )
    return {
        "success": True,
        "results": [
            {
                "document_id": hit.document_id,
                "chunk_index": hit.chunk_index,
                "chunk_text": hit.chunk_text,
                "similarity": hit.similarity,
                "metadata": hit.metadata,
            }
            for hit in outcome.results
        ],
        "count": len(outcome.results),
        "execution_time_ms": outcome.execution_time_ms,
        "limit": outcome.limit,
        "threshold": outcome.threshold,
    }

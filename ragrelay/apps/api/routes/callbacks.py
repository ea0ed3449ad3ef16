from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.apps.api.deps import get_db, get_runtime
from ragrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ragrelay.services.runtime import RelayRuntime
from ragrelay.services.tokens import bearer_token


# Inbound artifacts from the processing service. No gateway headers here; the
# per-resource token in each request is the only credential.
router = APIRouter(prefix="/rag", tags=["callbacks"], responses=DEFAULT_ERROR_RESPONSES)


class MarkdownCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str | None = None
    markdown: str | None = None
    error: str | None = None


class VectorCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str | None = None
    # Left loosely typed; entries are validated one by one so a bad chunk does not sink the batch.
    vectors: Any = None
    error: str | None = None


class ChatCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str | None = None
    conversation_id: str | None = None
    ai_response: str | None = None
    sources: list[Any] | None = None
    processing_time_ms: int | None = None
    callback_token: str | None = None
    error: str | None = None


@router.post("/document-callback/{document_id}")
async def markdown_callback(
    document_id: str,
    payload: MarkdownCallback,
    authorization: str | None = Header(default=None),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    status = await runtime.callbacks.apply_markdown(
        db,
        document_id=document_id,
        presented_token=bearer_token(authorization),
        tenant_id=payload.tenant_id,
        markdown=payload.markdown,
        error=payload.error,
    )
    return {"success": True, "message": "Markdown stored", "document_id": document_id, "status": status}


@router.post("/callback/{callback_id}")
async def vector_callback(
    callback_id: str,
    payload: VectorCallback,
    x_callback_token: str | None = Header(default=None),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await runtime.callbacks.apply_vectors(
        db,
        callback_id=callback_id,
        presented_token=x_callback_token,
        tenant_id=payload.tenant_id,
        vectors=payload.vectors,
        error=payload.error,
    )
    return {
        "success": True,
        "message": f"Stored {result.stored} vectors",
        "document_id": result.document_id,
        "vectors_stored": result.stored,
        "vectors_skipped": result.skipped,
        "status": result.status,
    }


@router.post("/chat-callback/{message_id}")
async def chat_callback(
    message_id: str,
    payload: ChatCallback,
    authorization: str | None = Header(default=None),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Some automation tools cannot set headers, so the body token is accepted as a fallback.
    presented = bearer_token(authorization) or payload.callback_token
    result = await runtime.callbacks.apply_chat_reply(
        db,
        message_id=message_id,
        presented_token=presented,
        tenant_id=payload.tenant_id,
        conversation_id=payload.conversation_id,
        ai_response=payload.ai_response,
        sources=payload.sources,
        processing_time_ms=payload.processing_time_ms,
        error=payload.error,
    )
    return {
        "success": True,
        "message": "Duplicate reply ignored" if result.duplicate else "Reply stored",
        "message_id": result.message_id,
        "conversation_id": result.conversation_id,
        "reply_id": result.reply_id,
        "status": result.status,
        "duplicate": result.duplicate,
    }

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.apps.api.deps import Caller, get_caller, get_db, get_runtime
from ragrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ragrelay.core.errors import NotFoundError
from ragrelay.persistence.repos import conversations as conversations_repo
from ragrelay.services.runtime import RelayRuntime


router = APIRouter(prefix="/rag", tags=["chat"], responses=DEFAULT_ERROR_RESPONSES)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    conversation_id: str | None = None


class ChatAccepted(BaseModel):
    success: bool = True
    message_id: str
    conversation_id: str
    status: str
    stream_url: str


@router.post("/chat", status_code=202, response_model=ChatAccepted)
async def submit_chat(
    payload: ChatRequest,
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> ChatAccepted:
    # The reply arrives later over the chat stream; this only acknowledges the question.
    message = await runtime.intake.submit_chat(
        db,
        tenant_id=caller.tenant_id,
        user_email=caller.user_email,
        message=payload.message,
        conversation_id=payload.conversation_id,
    )
    return ChatAccepted(
        message_id=message.id,
        conversation_id=message.conversation_id,
        status=message.status,
        stream_url=f"/v1/rag/chat-stream/{message.conversation_id}",
    )


@router.get("/conversations")
async def list_recent_conversations(
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Scoped to the calling user when the gateway identifies one, otherwise to the whole tenant.
    summaries = await conversations_repo.list_recent_conversations(
        db, caller.tenant_id, user_email=caller.user_email, limit=limit, offset=offset
    )
    return {
        "conversations": [
            {
                "conversation_id": summary.conversation_id,
                "created_at": summary.created_at.isoformat() if summary.created_at else None,
                "last_message_at": summary.last_message_at.isoformat() if summary.last_message_at else None,
                "last_user_message": summary.last_user_message,
                "message_count": summary.message_count,
            }
            for summary in summaries
        ],
        "limit": limit,
        "offset": offset,
    }


@router.get("/conversations/{conversation_id}/messages")
async def list_conversation_messages(
    conversation_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    conversation = await conversations_repo.get_conversation(db, caller.tenant_id, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    messages = await conversations_repo.list_messages(db, caller.tenant_id, conversation.id)
    return {
        "conversation_id": conversation.id,
        "messages": [
            {
                "id": message.id,
                "role": message.role,
                "content": message.content,
                "status": message.status,
                "reply_to_id": message.reply_to_id,
                "sources": message.sources_json or [],
                "processing_time_ms": message.processing_time_ms,
                "failure_reason": message.failure_reason,
                "created_at": message.created_at.isoformat() if message.created_at else None,
            }
            for message in messages
        ],
    }

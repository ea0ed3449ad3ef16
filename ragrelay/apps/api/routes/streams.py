from __future__ import annotations

from datetime import datetime, timezone
import json
import time
from typing import Any, AsyncGenerator
from uuid import uuid4

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.apps.api.deps import Caller, get_caller, get_db, get_runtime
from ragrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ragrelay.core.errors import NotFoundError
from ragrelay.persistence.repos import conversations as conversations_repo
from ragrelay.services.broadcast import (
    TOPIC_CHAT,
    TOPIC_KNOWLEDGE,
    BroadcastHub,
    ConnectionClosedError,
    QueueConnection,
)
from ragrelay.services.runtime import RelayRuntime
from ragrelay.services.telemetry import record_stream_duration


router = APIRouter(prefix="/rag", tags=["streams"], responses=DEFAULT_ERROR_RESPONSES)

_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
# How often the generator wakes to check for a client disconnect.
_POLL_S = 1.0


def _sse_message(payload: dict[str, Any]) -> str:
    # One compact JSON line per frame under the "message" event name.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"event: message\ndata: {data}\n\n"


async def _event_stream(
    request: Request,
    hub: BroadcastHub,
    handle: QueueConnection,
    *,
    tenant_id: str,
    client_id: str,
    conversation_id: str | None = None,
) -> AsyncGenerator[str, None]:
    start = time.monotonic()
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await handle.next_event(_POLL_S)
            except ConnectionClosedError:
                break
            if event is None:
                continue
            # Chat events are tenant-wide on the hub; keep only this conversation's.
            if conversation_id is not None and event.get("conversation_id", conversation_id) != conversation_id:
                continue
            yield _sse_message(event)
    finally:
        # Unregister as soon as the client goes away so nothing writes to a dead stream.
        await hub.unregister(tenant_id, client_id, handle=handle)
        record_stream_duration((time.monotonic() - start) * 1000.0)


async def _open_stream(
    request: Request,
    runtime: RelayRuntime,
    *,
    tenant_id: str,
    topic: str,
    conversation_id: str | None = None,
) -> StreamingResponse:
    client_id = uuid4().hex
    handle = QueueConnection(max_queue=runtime.settings.sse_client_queue_size)
    await runtime.hub.register(tenant_id, client_id, handle, topic=topic)
    connected: dict[str, Any] = {
        "type": "connected",
        "client_id": client_id,
        "topic": topic,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if conversation_id is not None:
        connected["conversation_id"] = conversation_id
    await handle.send(connected)
    return StreamingResponse(
        _event_stream(
            request,
            runtime.hub,
            handle,
            tenant_id=tenant_id,
            client_id=client_id,
            conversation_id=conversation_id,
        ),
        headers=_SSE_HEADERS,
        media_type="text/event-stream",
    )


@router.get("/chat-stream/{conversation_id}")
async def chat_stream(
    conversation_id: str,
    request: Request,
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> StreamingResponse:
    conversation = await conversations_repo.get_conversation(db, caller.tenant_id, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return await _open_stream(
        request,
        runtime,
        tenant_id=caller.tenant_id,
        topic=TOPIC_CHAT,
        conversation_id=conversation.id,
    )


@router.get("/knowledge-stream")
async def knowledge_stream(
    request: Request,
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
) -> StreamingResponse:
    return await _open_stream(request, runtime, tenant_id=caller.tenant_id, topic=TOPIC_KNOWLEDGE)

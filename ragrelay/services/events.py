from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from ragrelay.core.config import Settings


SOURCE_TAG = "onboarding"

ACTION_DOCUMENT_PROCESSING = "document-processing"
ACTION_VECTORIZE_CONTENT = "vectorize-content"
ACTION_PROCESS_CHAT = "process-chat-message"

RESOURCE_DOCUMENT = "document"
RESOURCE_CHAT = "chat_message"

API_PREFIX = "/v1/rag"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OutboundEvent(BaseModel):
    # Contract for every event handed to the external processing service.
    event_id: str = Field(default_factory=lambda: uuid4().hex)
    source: str = SOURCE_TAG
    action: str
    tenant_id: str
    resource_id: str
    resource_type: str
    download_url: str | None = None
    callback_urls: dict[str, str] = Field(default_factory=dict)
    callback_token: str
    content_type: str | None = None
    file_size: int | None = None
    original_filename: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)
    # Action-specific fields (legacy flat callback keys, chat context).
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def delivery_type(self) -> str:
        return self.action

    def to_wire(self) -> dict[str, Any]:
        # Flatten extras into the top level; the external service reads legacy keys directly.
        payload = self.model_dump(mode="json", exclude={"extra"})
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload


def serialize_payload(payload: dict[str, Any]) -> str:
    # Compact, key-sorted JSON keeps stored payloads stable and searchable by resource id.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _base_url(settings: Settings) -> str:
    return settings.app_url.rstrip("/")


def build_document_event(
    *,
    settings: Settings,
    tenant_id: str,
    document_id: str,
    callback_id: str,
    callback_token: str,
    filename: str,
    content_type: str,
    file_size: int,
    action: str = ACTION_DOCUMENT_PROCESSING,
    metadata: dict[str, Any] | None = None,
) -> OutboundEvent:
    base = _base_url(settings)
    download_url = f"{base}{API_PREFIX}/documents/{document_id}/content"
    markdown_url = f"{base}{API_PREFIX}/document-callback/{document_id}"
    vector_url = f"{base}{API_PREFIX}/callback/{callback_id}"
    extra: dict[str, Any] = {
        "document_id": document_id,
        "document_url": download_url,
        "callback_url": vector_url,
        "markdown_callback_url": markdown_url,
        "vector_callback_url": vector_url,
    }
    if metadata:
        extra["metadata"] = metadata
    return OutboundEvent(
        action=action,
        tenant_id=tenant_id,
        resource_id=document_id,
        resource_type=RESOURCE_DOCUMENT,
        download_url=download_url,
        callback_urls={"markdown": markdown_url, "vectors": vector_url},
        callback_token=callback_token,
        content_type=content_type,
        file_size=file_size,
        original_filename=filename,
        extra=extra,
    )


def build_chat_event(
    *,
    settings: Settings,
    tenant_id: str,
    conversation_id: str,
    message_id: str,
    message: str,
    callback_token: str,
    user_email: str | None = None,
) -> OutboundEvent:
    base = _base_url(settings)
    reply_url = f"{base}{API_PREFIX}/chat-callback/{message_id}"
    return OutboundEvent(
        action=ACTION_PROCESS_CHAT,
        tenant_id=tenant_id,
        resource_id=message_id,
        resource_type=RESOURCE_CHAT,
        callback_urls={"reply": reply_url},
        callback_token=callback_token,
        content_type="text/plain",
        extra={
            "conversation_id": conversation_id,
            "message_id": message_id,
            "customer_message": message,
            "user_email": user_email,
            "callback_url": reply_url,
            "vector_search_url": f"{base}{API_PREFIX}/vector-search",
            "queue_name": settings.response_queue_name,
        },
    )

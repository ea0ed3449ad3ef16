from __future__ import annotations

from dataclasses import dataclass
import logging
import mimetypes
import os
import secrets
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.core.config import Settings
from ragrelay.core.errors import InvalidTransitionError, NotFoundError, TenantIsolationError, ValidationError
from ragrelay.domain.models import ChatMessage, Document
from ragrelay.domain.states import AWAITING_ARTIFACTS, PROCESSING, UPLOADING
from ragrelay.persistence.repos import conversations as conversations_repo
from ragrelay.persistence.repos import documents as documents_repo
from ragrelay.services.broadcast import TOPIC_KNOWLEDGE
from ragrelay.services.delivery.publisher import PublishDispatcher
from ragrelay.services.events import (
    ACTION_DOCUMENT_PROCESSING,
    ACTION_VECTORIZE_CONTENT,
    RESOURCE_CHAT,
    RESOURCE_DOCUMENT,
    OutboundEvent,
    build_chat_event,
    build_document_event,
)
from ragrelay.services.ingestion.lifecycle import IngestionLifecycle
from ragrelay.services.tokens import TokenAuthority


logger = logging.getLogger(__name__)

# Content types for extensions the stdlib table gets wrong or lacks.
_CONTENT_TYPES = {
    ".md": "text/markdown",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def guess_content_type(filename: str, declared: str | None = None) -> str:
    extension = os.path.splitext(filename)[1].lower()
    if extension in _CONTENT_TYPES:
        return _CONTENT_TYPES[extension]
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or declared or "application/octet-stream"


@dataclass(frozen=True)
class IngestItem:
    title: str
    content: str
    metadata: dict[str, Any]


class IntakeService:
    """Producer side: creates resources, mints their tokens, and hands them to the publisher."""

    def __init__(
        self,
        *,
        settings: Settings,
        tokens: TokenAuthority,
        lifecycle: IngestionLifecycle,
        dispatcher: PublishDispatcher,
    ) -> None:
        self._settings = settings
        self._tokens = tokens
        self._lifecycle = lifecycle
        self._dispatcher = dispatcher

    def _validate_upload(self, filename: str, size: int) -> None:
        if not filename:
            raise ValidationError("filename is required")
        extension = os.path.splitext(filename)[1].lower()
        if extension not in self._settings.upload_extensions():
            raise ValidationError(
                f"Unsupported file type: {extension or 'none'}",
                hint="supported: " + ", ".join(sorted(self._settings.upload_extensions())),
            )
        if size <= 0:
            raise ValidationError("File is empty")
        if size > self._settings.max_upload_bytes:
            raise ValidationError(f"File exceeds the {self._settings.max_upload_bytes} byte limit")

    async def _create_document(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        user_email: str | None,
        filename: str,
        content_type: str,
        data: bytes,
        source: str,
        metadata: dict[str, Any],
        action: str,
    ) -> tuple[Document, OutboundEvent]:
        document = await documents_repo.create_document(
            session,
            document_id=uuid4().hex,
            tenant_id=tenant_id,
            filename=filename,
            content_type=content_type,
            file_size=len(data),
            source=source,
            raw_content=data,
            metadata_json=metadata,
            status=UPLOADING,
            callback_id=secrets.token_hex(16),
            created_by=user_email,
        )
        await session.flush()
        token = await self._tokens.mint_resource_token(
            session, tenant_id, document.id, resource_type=RESOURCE_DOCUMENT
        )
        event = build_document_event(
            settings=self._settings,
            tenant_id=tenant_id,
            document_id=document.id,
            callback_id=document.callback_id,
            callback_token=token,
            filename=filename,
            content_type=content_type,
            file_size=len(data),
            action=action,
            metadata=metadata or None,
        )
        return document, event

    async def submit_upload(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        user_email: str | None,
        filename: str,
        declared_content_type: str | None,
        data: bytes,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        self._validate_upload(filename, len(data))
        document, event = await self._create_document(
            session,
            tenant_id=tenant_id,
            user_email=user_email,
            filename=filename,
            content_type=guess_content_type(filename, declared_content_type),
            data=data,
            source="upload",
            metadata=metadata or {},
            action=ACTION_DOCUMENT_PROCESSING,
        )
        transition = self._lifecycle.apply(document, PROCESSING)
        await session.commit()
        await self._lifecycle.hub.broadcast(
            tenant_id,
            {
                "type": "document-uploaded",
                "document_id": document.id,
                "filename": document.filename,
                "file_size": document.file_size,
                "status": document.status,
            },
            topic=TOPIC_KNOWLEDGE,
        )
        await self._lifecycle.notify([transition])
        self._dispatcher.dispatch(event)
        logger.info(
            "document_submitted tenant_id=%s document_id=%s bytes=%s",
            tenant_id,
            document.id,
            document.file_size,
        )
        return document

    async def submit_text(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        user_email: str | None,
        items: list[IngestItem],
    ) -> list[Document]:
        if not items:
            raise ValidationError("documents must be a non-empty array")
        if len(items) > self._settings.max_ingest_documents:
            raise ValidationError(f"At most {self._settings.max_ingest_documents} documents per request")
        for position, item in enumerate(items):
            if not item.content.strip():
                raise ValidationError(f"documents[{position}].content is empty")
            if len(item.content) > self._settings.max_ingest_chars:
                raise ValidationError(
                    f"documents[{position}].content exceeds {self._settings.max_ingest_chars} characters"
                )
        created: list[tuple[Document, OutboundEvent]] = []
        for item in items:
            created.append(
                await self._create_document(
                    session,
                    tenant_id=tenant_id,
                    user_email=user_email,
                    filename=item.title or "untitled.txt",
                    content_type="text/plain",
                    data=item.content.encode("utf-8"),
                    source="ingest",
                    metadata=item.metadata,
                    action=ACTION_VECTORIZE_CONTENT,
                )
            )
        transitions = [self._lifecycle.apply(document, PROCESSING) for document, _ in created]
        await session.commit()
        await self._lifecycle.notify(transitions)
        for _, event in created:
            self._dispatcher.dispatch(event)
        return [document for document, _ in created]

    async def retry_document(self, session: AsyncSession, *, tenant_id: str, document_id: str) -> Document:
        """Reprocess a document under a fresh resource token."""
        document = await documents_repo.get_document(session, tenant_id, document_id)
        if document is None:
            raise NotFoundError("Document not found")
        if document.status in AWAITING_ARTIFACTS:
            raise InvalidTransitionError(f"Document is still {document.status}; wait for it to finish or fail")
        transition = self._lifecycle.apply(document, PROCESSING)
        token = await self._tokens.mint_resource_token(
            session, tenant_id, document.id, resource_type=RESOURCE_DOCUMENT
        )
        event = build_document_event(
            settings=self._settings,
            tenant_id=tenant_id,
            document_id=document.id,
            callback_id=document.callback_id,
            callback_token=token,
            filename=document.filename,
            content_type=document.content_type,
            file_size=document.file_size,
            action=ACTION_VECTORIZE_CONTENT if document.source == "ingest" else ACTION_DOCUMENT_PROCESSING,
            metadata=document.metadata_json or None,
        )
        await session.commit()
        await self._lifecycle.notify([transition])
        self._dispatcher.dispatch(event)
        logger.info("document_retry_submitted tenant_id=%s document_id=%s", tenant_id, document.id)
        return document

    async def submit_chat(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        user_email: str | None,
        message: str,
        conversation_id: str | None = None,
    ) -> ChatMessage:
        text = (message or "").strip()
        if not text:
            raise ValidationError("message is required")
        if len(text) > self._settings.max_chat_message_chars:
            raise ValidationError(f"message exceeds {self._settings.max_chat_message_chars} characters")
        conversation = await conversations_repo.get_or_create_conversation(
            session,
            conversation_id=conversation_id or uuid4().hex,
            tenant_id=tenant_id,
            user_email=user_email,
        )
        if conversation is None:
            raise TenantIsolationError("Conversation belongs to another tenant")
        chat_message = await conversations_repo.add_message(
            session,
            message_id=uuid4().hex,
            conversation_id=conversation.id,
            tenant_id=tenant_id,
            role="user",
            content=text,
            status=UPLOADING,
        )
        transition = self._lifecycle.apply(chat_message, PROCESSING)
        await session.flush()
        token = await self._tokens.mint_resource_token(
            session, tenant_id, chat_message.id, resource_type=RESOURCE_CHAT
        )
        event = build_chat_event(
            settings=self._settings,
            tenant_id=tenant_id,
            conversation_id=conversation.id,
            message_id=chat_message.id,
            message=text,
            callback_token=token,
            user_email=user_email,
        )
        await session.commit()
        await self._lifecycle.notify([transition])
        self._dispatcher.dispatch(event)
        logger.info(
            "chat_message_submitted tenant_id=%s conversation_id=%s message_id=%s",
            tenant_id,
            conversation.id,
            chat_message.id,
        )
        return chat_message

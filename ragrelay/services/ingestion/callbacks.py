from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.core.config import Settings
from ragrelay.core.errors import (
    AuthError,
    NotFoundError,
    TenantIsolationError,
    ValidationError,
    VectorDimensionError,
)
from ragrelay.core.logging import get_security_logger
from ragrelay.domain.states import FAILED, MARKDOWN_RECEIVED, READY, VECTORS_RECEIVED
from ragrelay.persistence.repos import conversations as conversations_repo
from ragrelay.persistence.repos import documents as documents_repo
from ragrelay.persistence.repos import vectors as vectors_repo
from ragrelay.services.broadcast import TOPIC_KNOWLEDGE
from ragrelay.services.ingestion.lifecycle import IngestionLifecycle, Transition
from ragrelay.services.tokens import SCOPE_RESOURCE, TokenAuthority


logger = logging.getLogger(__name__)
security_logger = get_security_logger()


@dataclass(frozen=True)
class VectorBatchResult:
    document_id: str
    stored: int
    skipped: int
    status: str


@dataclass(frozen=True)
class ReplyResult:
    message_id: str
    conversation_id: str
    reply_id: str | None
    status: str
    duplicate: bool = False


class QueueReply(BaseModel):
    # Reply message shape on the response queue; anything else is a poison message.
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    response: str = Field(min_length=1)
    sources: list[Any] | None = None
    processing_time_ms: int | None = None
    callback_token: str | None = None


def dimension_reject_reason(dimension: int) -> str:
    return f"embedding must be {dimension} finite numbers"


def _valid_embedding(value: Any) -> list[float] | None:
    embedding: list[float] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)) or not math.isfinite(item):
            return None
        embedding.append(float(item))
    return embedding


def partition_vectors(
    items: list[Any], *, dimension: int
) -> tuple[list[dict[str, Any]], list[tuple[int, str]]]:
    """Split a callback batch into storable rows and (position, reason) rejects.

    A repeated chunk_index keeps the last occurrence.
    """
    accepted: dict[int, dict[str, Any]] = {}
    rejected: list[tuple[int, str]] = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            rejected.append((position, "not an object"))
            continue
        raw_embedding = item.get("embedding")
        if not isinstance(raw_embedding, list) or len(raw_embedding) != dimension:
            rejected.append((position, dimension_reject_reason(dimension)))
            continue
        embedding = _valid_embedding(raw_embedding)
        if embedding is None:
            rejected.append((position, "embedding values must be finite numbers"))
            continue
        text = item.get("chunk_text", item.get("content"))
        if not isinstance(text, str) or not text.strip():
            rejected.append((position, "chunk_text is required"))
            continue
        chunk_index = item.get("chunk_index", position)
        if isinstance(chunk_index, bool) or not isinstance(chunk_index, int) or chunk_index < 0:
            rejected.append((position, "chunk_index must be a non-negative integer"))
            continue
        metadata = item.get("metadata")
        if chunk_index in accepted:
            rejected.append((position, "duplicate chunk_index"))
        accepted[chunk_index] = {
            "chunk_index": chunk_index,
            "chunk_text": text,
            "embedding": embedding,
            "metadata": metadata if isinstance(metadata, dict) else {},
        }
    return list(accepted.values()), rejected


class CallbackService:
    """Applies inbound artifacts from the processing service to their resources.

    Every callback resolves the resource first (404), then checks the
    resource token against the owning tenant (401), then the tenant the
    caller claims (403). Replays are idempotent.
    """

    def __init__(self, *, tokens: TokenAuthority, lifecycle: IngestionLifecycle, settings: Settings) -> None:
        self._tokens = tokens
        self._lifecycle = lifecycle
        self._dimension = int(settings.vector_dimension)

    async def _authorize(
        self,
        session: AsyncSession,
        *,
        resource_type: str,
        resource_id: str,
        owner_tenant_id: str,
        presented_token: str | None,
        claimed_tenant_id: str | None,
    ) -> None:
        if not await self._tokens.verify(
            session, owner_tenant_id, resource_id, presented_token, SCOPE_RESOURCE
        ):
            security_logger.warning(
                "callback_token_rejected resource_type=%s resource_id=%s token_present=%s",
                resource_type,
                resource_id,
                bool(presented_token),
            )
            raise AuthError("Invalid callback token")
        if claimed_tenant_id is not None and claimed_tenant_id != owner_tenant_id:
            security_logger.warning(
                "callback_tenant_mismatch resource_type=%s resource_id=%s owner_tenant_id=%s claimed_tenant_id=%s",
                resource_type,
                resource_id,
                owner_tenant_id,
                claimed_tenant_id,
            )
            raise TenantIsolationError("Tenant does not own this resource")

    async def apply_markdown(
        self,
        session: AsyncSession,
        *,
        document_id: str,
        presented_token: str | None,
        tenant_id: str | None,
        markdown: str | None,
        error: str | None = None,
    ) -> str:
        """Store processed markdown (or a reported error); returns the resulting status."""
        document = await documents_repo.get_document_by_id(session, document_id)
        if document is None:
            raise NotFoundError("Document not found")
        await self._authorize(
            session,
            resource_type="document",
            resource_id=document.id,
            owner_tenant_id=document.tenant_id,
            presented_token=presented_token,
            claimed_tenant_id=tenant_id,
        )
        if error:
            transitions = [self._lifecycle.advance(document, FAILED, reason=error)]
        else:
            if not isinstance(markdown, str) or not markdown.strip():
                raise ValidationError("markdown is required")
            # Overwrite rather than append so a replay leaves a single artifact.
            document.processed_markdown = markdown
            transitions = [
                self._lifecycle.advance(document, MARKDOWN_RECEIVED),
                self._lifecycle.advance(document, READY),
            ]
        await session.commit()
        await self._lifecycle.notify(transitions)
        logger.info(
            "markdown_callback_applied document_id=%s status=%s chars=%s",
            document.id,
            document.status,
            len(markdown or ""),
        )
        return document.status

    async def apply_vectors(
        self,
        session: AsyncSession,
        *,
        callback_id: str,
        presented_token: str | None,
        tenant_id: str | None,
        vectors: Any,
        error: str | None = None,
    ) -> VectorBatchResult:
        document = await documents_repo.get_document_by_callback_id(session, callback_id)
        if document is None:
            raise NotFoundError("Unknown callback id")
        await self._authorize(
            session,
            resource_type="document",
            resource_id=document.id,
            owner_tenant_id=document.tenant_id,
            presented_token=presented_token,
            claimed_tenant_id=tenant_id,
        )
        if error:
            transition = self._lifecycle.advance(document, FAILED, reason=error)
            await session.commit()
            await self._lifecycle.notify([transition])
            return VectorBatchResult(document_id=document.id, stored=0, skipped=0, status=document.status)

        if not isinstance(vectors, list) or not vectors:
            raise ValidationError("vectors must be a non-empty array")
        rows, rejected = partition_vectors(vectors, dimension=self._dimension)
        if rejected:
            logger.warning(
                "vector_callback_skipped document_id=%s skipped=%s submitted=%s first_reason=%s",
                document.id,
                len(rejected),
                len(vectors),
                rejected[0][1],
            )
        if not rows:
            # Dimension mismatch only when that is the sole reason the batch was refused.
            if all(reason == dimension_reject_reason(self._dimension) for _, reason in rejected):
                raise VectorDimensionError(
                    f"No valid vectors in batch; all {len(vectors)} entries were rejected",
                    hint=f"expected embeddings of dimension {self._dimension}",
                )
            raise ValidationError(
                f"No valid vectors in batch; entry {rejected[0][0]} was rejected: {rejected[0][1]}"
            )

        stored = await vectors_repo.replace_vectors(
            session, tenant_id=document.tenant_id, document_id=document.id, rows=rows
        )
        transitions = [
            self._lifecycle.advance(document, VECTORS_RECEIVED),
            self._lifecycle.advance(document, READY),
        ]
        await session.commit()
        await self._lifecycle.hub.broadcast(
            document.tenant_id,
            {
                "type": "document-vectorized",
                "document_id": document.id,
                "vectors_stored": stored,
                "vectors_skipped": len(rejected),
            },
            topic=TOPIC_KNOWLEDGE,
        )
        await self._lifecycle.notify(transitions)
        logger.info(
            "vector_callback_applied document_id=%s stored=%s skipped=%s status=%s",
            document.id,
            stored,
            len(rejected),
            document.status,
        )
        return VectorBatchResult(
            document_id=document.id,
            stored=stored,
            skipped=len(rejected),
            status=document.status,
        )

    async def apply_chat_reply(
        self,
        session: AsyncSession,
        *,
        message_id: str,
        presented_token: str | None,
        tenant_id: str | None,
        conversation_id: str | None,
        ai_response: str | None,
        sources: list[Any] | None = None,
        processing_time_ms: int | None = None,
        error: str | None = None,
        verify_token: bool = True,
    ) -> ReplyResult:
        message = await conversations_repo.get_message_by_id(session, message_id)
        if message is None or message.role != "user":
            raise NotFoundError("Message not found")
        if verify_token:
            await self._authorize(
                session,
                resource_type="chat_message",
                resource_id=message.id,
                owner_tenant_id=message.tenant_id,
                presented_token=presented_token,
                claimed_tenant_id=tenant_id,
            )
        elif tenant_id != message.tenant_id:
            security_logger.warning(
                "callback_tenant_mismatch resource_type=chat_message resource_id=%s owner_tenant_id=%s claimed_tenant_id=%s",
                message.id,
                message.tenant_id,
                tenant_id,
            )
            raise TenantIsolationError("Tenant does not own this message")
        if conversation_id and conversation_id != message.conversation_id:
            raise ValidationError("conversation_id does not match the message")
        owning_conversation_id = message.conversation_id

        if error:
            transition = self._lifecycle.advance(message, FAILED, reason=error)
            await session.commit()
            await self._lifecycle.notify([transition])
            return ReplyResult(
                message_id=message.id,
                conversation_id=message.conversation_id,
                reply_id=None,
                status=message.status,
            )

        if not isinstance(ai_response, str) or not ai_response.strip():
            raise ValidationError("ai_response is required")

        existing = await conversations_repo.get_reply(session, message.id)
        if existing is not None:
            return ReplyResult(
                message_id=message.id,
                conversation_id=message.conversation_id,
                reply_id=existing.id,
                status=message.status,
                duplicate=True,
            )

        reply_id = uuid4().hex
        await conversations_repo.add_message(
            session,
            message_id=reply_id,
            conversation_id=message.conversation_id,
            tenant_id=message.tenant_id,
            role="assistant",
            content=ai_response,
            status=READY,
            reply_to_id=message.id,
            sources=sources or [],
            processing_time_ms=processing_time_ms,
        )
        transition: Transition | None = self._lifecycle.advance(
            message,
            READY,
            details={
                "reply_id": reply_id,
                "ai_response": ai_response,
                "sources": sources or [],
                "processing_time_ms": processing_time_ms,
            },
        )
        try:
            await session.commit()
        except IntegrityError:
            # A concurrent delivery of the same reply won the unique constraint.
            await session.rollback()
            existing = await conversations_repo.get_reply(session, message_id)
            return ReplyResult(
                message_id=message_id,
                conversation_id=owning_conversation_id,
                reply_id=existing.id if existing is not None else None,
                status=READY,
                duplicate=True,
            )
        await self._lifecycle.notify([transition])
        return ReplyResult(
            message_id=message.id,
            conversation_id=message.conversation_id,
            reply_id=reply_id,
            status=message.status,
        )

    async def consume_queue_reply(self, session: AsyncSession, raw: Any) -> str:
        """Apply one reply from the response queue; returns stored, duplicate, or discarded."""
        if not isinstance(raw, dict):
            logger.warning("queue_reply_discarded reason=not_a_mapping type=%s", type(raw).__name__)
            return "discarded"
        try:
            reply = QueueReply.model_validate(raw)
        except PydanticValidationError as exc:
            logger.warning("queue_reply_discarded reason=invalid_fields errors=%s", exc.error_count())
            return "discarded"
        try:
            result = await self.apply_chat_reply(
                session,
                message_id=reply.message_id,
                presented_token=reply.callback_token,
                tenant_id=reply.tenant_id,
                conversation_id=reply.conversation_id,
                ai_response=reply.response,
                sources=reply.sources,
                processing_time_ms=reply.processing_time_ms,
                # The broker is an internal channel; the token is checked only when the responder echoes it.
                verify_token=reply.callback_token is not None,
            )
        except (NotFoundError, AuthError, TenantIsolationError, ValidationError) as exc:
            # Retrying a message that cannot apply would loop forever; drop it.
            logger.warning(
                "queue_reply_discarded reason=%s message_id=%s",
                exc.code,
                reply.message_id,
            )
            return "discarded"
        return "duplicate" if result.duplicate else "stored"

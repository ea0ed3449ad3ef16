from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from ragrelay.core.config import get_settings


# JSONB on Postgres, plain JSON elsewhere so the schema also builds on SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Status columns are short fixed-width strings; every lifecycle name must fit.
STATUS_LENGTH = 20


class UTCDateTime(TypeDecorator):
    # Normalize timestamps to aware UTC on both write and read, including drivers without tz support.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class TenantToken(Base):
    __tablename__ = "tenant_tokens"

    # One active token per tenant; rotation overwrites the row in place.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    token: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class ResourceToken(Base):
    __tablename__ = "resource_tokens"

    # Resource tokens never expire so reprocessing can call back at any later time.
    resource_id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String(32))
    token: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    filename: Mapped[str] = mapped_column(String)
    content_type: Mapped[str] = mapped_column(String)
    file_size: Mapped[int] = mapped_column(Integer, default=0)
    # Distinguish multipart uploads from JSON text ingestion.
    source: Mapped[str] = mapped_column(String(32), default="upload")
    # Raw bytes served back to the processing service through the download URL.
    raw_content: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String(STATUS_LENGTH), index=True)
    # Opaque id embedded in the vector callback URL instead of the document id.
    callback_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    processed_markdown: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        # At most one stored reply per outbound message keeps replayed callbacks idempotent.
        UniqueConstraint("reply_to_id", name="uq_chat_messages_reply_to"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String, ForeignKey("conversations.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    role: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text)
    # User messages carry the chat exchange lifecycle; replies are stored as ready.
    status: Mapped[str] = mapped_column(String(STATUS_LENGTH))
    reply_to_id: Mapped[str | None] = mapped_column(String, nullable=True)
    sources_json: Mapped[list[Any] | None] = mapped_column(JSONType, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class DeliveryRecord(Base):
    __tablename__ = "delivery_records"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    delivery_type: Mapped[str] = mapped_column(String(64))
    # Serialized outbound event exactly as it will be re-sent.
    payload: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(STATUS_LENGTH))
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(UTCDateTime())
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class DocumentVector(Base):
    __tablename__ = "document_vectors"
    __table_args__ = (
        # Replayed batches replace chunks by index instead of duplicating them.
        UniqueConstraint("document_id", "chunk_index", name="uq_document_vectors_chunk"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    document_id: Mapped[str] = mapped_column(String, ForeignKey("documents.id"), index=True)
    chunk_index: Mapped[int] = mapped_column(Integer)
    chunk_text: Mapped[str] = mapped_column(Text)
    # Keep vector dimension aligned with the configured embedding model.
    # Sized from settings so the column and callback validation always agree.
    embedding: Mapped[list[float]] = mapped_column(Vector(get_settings().vector_dimension))
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class VectorSearchLog(Base):
    __tablename__ = "vector_search_logs"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # -1 marks a failed search so failures stay visible in result-count dashboards.
    result_count: Mapped[int] = mapped_column(Integer)
    threshold: Mapped[float | None] = mapped_column(nullable=True)
    result_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    execution_time_ms: Mapped[int] = mapped_column(Integer)
    filters_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


Index(
    "ix_delivery_records_status_next_retry_at",
    DeliveryRecord.status,
    DeliveryRecord.next_retry_at,
)
Index("ix_chat_messages_conversation_created_at", ChatMessage.conversation_id, ChatMessage.created_at)
Index("ix_vector_search_logs_tenant_created_at", VectorSearchLog.tenant_id, VectorSearchLog.created_at.desc())

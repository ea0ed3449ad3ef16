"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

from ragrelay.core.config import get_settings

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Ensure pgvector is enabled for every environment, not just manual setup.
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "tenant_tokens",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("token", sa.String(128), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "resource_tokens",
        sa.Column("resource_id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(32), nullable=False),
        sa.Column("token", sa.String(128), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_resource_tokens_tenant_id", "resource_tokens", ["tenant_id"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("raw_content", sa.LargeBinary(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False),
        # Lifecycle names must fit in 20 characters.
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("callback_id", sa.String(64), nullable=False),
        sa.Column("processed_markdown", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_documents_tenant_id", "documents", ["tenant_id"])
    op.create_index("ix_documents_status", "documents", ["status"])
    op.create_index("ix_documents_callback_id", "documents", ["callback_id"], unique=True)

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_email", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_conversations_tenant_id", "conversations", ["tenant_id"])

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("conversation_id", sa.String(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("reply_to_id", sa.String(), nullable=True),
        sa.Column("sources_json", postgresql.JSONB(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("reply_to_id", name="uq_chat_messages_reply_to"),
    )
    op.create_index("ix_chat_messages_conversation_id", "chat_messages", ["conversation_id"])
    op.create_index("ix_chat_messages_tenant_id", "chat_messages", ["tenant_id"])
    op.create_index(
        "ix_chat_messages_conversation_created_at",
        "chat_messages",
        ["conversation_id", "created_at"],
    )

    op.create_table(
        "delivery_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("delivery_type", sa.String(64), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_delivery_records_tenant_id", "delivery_records", ["tenant_id"])
    # Drives the scheduler's due-record scan.
    op.create_index(
        "ix_delivery_records_status_next_retry_at",
        "delivery_records",
        ["status", "next_retry_at"],
    )

    op.create_table(
        "document_vectors",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id"), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        # Keep schema aligned with the embedding dimension used at runtime.
        sa.Column("embedding", Vector(get_settings().vector_dimension), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("document_id", "chunk_index", name="uq_document_vectors_chunk"),
    )
    op.create_index("ix_document_vectors_tenant_id", "document_vectors", ["tenant_id"])
    op.create_index("ix_document_vectors_document_id", "document_vectors", ["document_id"])

    op.create_table(
        "vector_search_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("result_count", sa.Integer(), nullable=False),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("result_limit", sa.Integer(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=False),
        sa.Column("filters_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_vector_search_logs_tenant_id", "vector_search_logs", ["tenant_id"])
    op.execute(
        "CREATE INDEX ix_vector_search_logs_tenant_created_at "
        "ON vector_search_logs (tenant_id, created_at DESC)"
    )


def downgrade() -> None:
    op.drop_index("ix_vector_search_logs_tenant_created_at", table_name="vector_search_logs")
    op.drop_index("ix_vector_search_logs_tenant_id", table_name="vector_search_logs")
    op.drop_table("vector_search_logs")
    op.drop_index("ix_document_vectors_document_id", table_name="document_vectors")
    op.drop_index("ix_document_vectors_tenant_id", table_name="document_vectors")
    op.drop_table("document_vectors")
    op.drop_index("ix_delivery_records_status_next_retry_at", table_name="delivery_records")
    op.drop_index("ix_delivery_records_tenant_id", table_name="delivery_records")
    op.drop_table("delivery_records")
    op.drop_index("ix_chat_messages_conversation_created_at", table_name="chat_messages")
    op.drop_index("ix_chat_messages_tenant_id", table_name="chat_messages")
    op.drop_index("ix_chat_messages_conversation_id", table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_index("ix_conversations_tenant_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("ix_documents_callback_id", table_name="documents")
    op.drop_index("ix_documents_status", table_name="documents")
    op.drop_index("ix_documents_tenant_id", table_name="documents")
    op.drop_table("documents")
    op.drop_index("ix_resource_tokens_tenant_id", table_name="resource_tokens")
    op.drop_table("resource_tokens")
    op.drop_table("tenant_tokens")

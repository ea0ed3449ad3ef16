from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.domain.models import Document
from ragrelay.persistence.guards import tenant_predicate


async def create_document(
    session: AsyncSession,
    *,
    document_id: str,
    tenant_id: str,
    filename: str,
    content_type: str,
    file_size: int,
    source: str,
    raw_content: bytes | None,
    metadata_json: dict[str, Any],
    status: str,
    callback_id: str,
    created_by: str | None = None,
) -> Document:
    # Create the document row first so every later transition has an anchor.
    doc = Document(
        id=document_id,
        tenant_id=tenant_id,
        filename=filename,
        content_type=content_type,
        file_size=file_size,
        source=source,
        raw_content=raw_content,
        metadata_json=metadata_json,
        status=status,
        callback_id=callback_id,
        created_by=created_by,
    )
    session.add(doc)
    return doc


async def list_documents(session: AsyncSession, tenant_id: str, *, limit: int = 100) -> list[Document]:
    # Tenant scoping prevents cross-tenant leakage.
    result = await session.execute(
        select(Document)
        .where(tenant_predicate(Document, tenant_id))
        .order_by(Document.created_at.desc(), Document.id)
        .limit(max(1, limit))
    )
    return list(result.scalars().all())


async def get_document(session: AsyncSession, tenant_id: str, document_id: str) -> Document | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(Document).where(Document.id == document_id, tenant_predicate(Document, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_document_by_id(session: AsyncSession, document_id: str) -> Document | None:
    # Callback handlers resolve the owner first; tenant checks are enforced by callers.
    result = await session.execute(select(Document).where(Document.id == document_id))
    return result.scalar_one_or_none()


async def get_document_by_callback_id(session: AsyncSession, callback_id: str) -> Document | None:
    result = await session.execute(select(Document).where(Document.callback_id == callback_id))
    return result.scalar_one_or_none()

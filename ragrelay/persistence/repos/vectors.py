from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.domain.models import DocumentVector
from ragrelay.persistence.guards import tenant_predicate


async def replace_vectors(
    session: AsyncSession,
    *,
    tenant_id: str,
    document_id: str,
    rows: list[dict[str, Any]],
) -> int:
    # Replace by chunk_index so replayed batches overwrite instead of duplicating.
    if not rows:
        return 0
    indexes = [int(row["chunk_index"]) for row in rows]
    await session.execute(
        delete(DocumentVector).where(
            tenant_predicate(DocumentVector, tenant_id),
            DocumentVector.document_id == document_id,
            DocumentVector.chunk_index.in_(indexes),
        )
    )
    for row in rows:
        session.add(
            DocumentVector(
                tenant_id=tenant_id,
                document_id=document_id,
                chunk_index=int(row["chunk_index"]),
                chunk_text=row["chunk_text"],
                embedding=row["embedding"],
                metadata_json=row.get("metadata") or {},
            )
        )
    await session.flush()
    return len(rows)


async def count_vectors(session: AsyncSession, *, tenant_id: str, document_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(DocumentVector).where(tenant_predicate(DocumentVector, tenant_id))
    if document_id is not None:
        stmt = stmt.where(DocumentVector.document_id == document_id)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def delete_vectors(session: AsyncSession, *, tenant_id: str, document_id: str) -> int:
    result = await session.execute(
        delete(DocumentVector).where(
            tenant_predicate(DocumentVector, tenant_id),
            DocumentVector.document_id == document_id,
        )
    )
    return int(result.rowcount or 0)


async def vector_stats(session: AsyncSession, *, tenant_id: str) -> dict[str, int]:
    result = await session.execute(
        select(
            func.count(DocumentVector.id),
            func.count(func.distinct(DocumentVector.document_id)),
        ).where(tenant_predicate(DocumentVector, tenant_id))
    )
    total, documents = result.one()
    return {"total_vectors": int(total or 0), "documents_with_vectors": int(documents or 0)}

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
import time
from typing import Any, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.core.config import Settings
from ragrelay.core.errors import (
    AuthError,
    IndexUnavailableError,
    RelayError,
    ValidationError,
    VectorDimensionError,
)
from ragrelay.domain.models import DocumentVector
from ragrelay.persistence.guards import tenant_predicate
from ragrelay.persistence.repos import search_logs as search_logs_repo
from ragrelay.services.tokens import SCOPE_RESOURCE, SCOPE_TENANT, TokenAuthority


logger = logging.getLogger(__name__)

# Result-count sentinel for searches that did not complete.
FAILED_RESULT_COUNT = -1


@dataclass(frozen=True)
class SearchRequest:
    tenant_id: str
    embedding: list[float]
    limit: int | None = None
    threshold: float | None = None
    filters: dict[str, Any] = field(default_factory=dict)
    # Correlation id of the chat message whose token is presented instead of the tenant token.
    message_id: str | None = None


@dataclass(frozen=True)
class SearchHit:
    document_id: str
    chunk_index: int
    chunk_text: str
    similarity: float
    metadata: dict[str, Any]


@dataclass(frozen=True)
class SearchOutcome:
    results: list[SearchHit]
    execution_time_ms: int
    limit: int
    threshold: float


class VectorIndex(Protocol):
    async def query(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        embedding: list[float],
        limit: int,
        threshold: float,
        filters: dict[str, Any],
    ) -> list[SearchHit]: ...


class PgVectorIndex:
    """Cosine similarity over the tenant's stored chunks using pgvector."""

    async def query(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        embedding: list[float],
        limit: int,
        threshold: float,
        filters: dict[str, Any],
    ) -> list[SearchHit]:
        distance = DocumentVector.embedding.cosine_distance(embedding)
        similarity = (1 - distance).label("similarity")
        stmt = (
            select(DocumentVector, similarity)
            .where(tenant_predicate(DocumentVector, tenant_id), (1 - distance) > threshold)
            .order_by(distance)
            .limit(limit)
        )
        document_id = filters.get("document_id")
        if document_id:
            stmt = stmt.where(DocumentVector.document_id == str(document_id))
        rows = (await session.execute(stmt)).all()
        return [
            SearchHit(
                document_id=row.DocumentVector.document_id,
                chunk_index=row.DocumentVector.chunk_index,
                chunk_text=row.DocumentVector.chunk_text,
                similarity=float(row.similarity),
                metadata=row.DocumentVector.metadata_json or {},
            )
            for row in rows
        ]


def classify_index_error(exc: BaseException) -> tuple[str, str]:
    """Map a database failure to (error_code, operator hint)."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(exc).lower()
    if 'type "vector" does not exist' in message:
        return "PGVECTOR_NOT_INSTALLED", "pgvector extension not installed"
    if sqlstate == "42883" or "operator does not exist" in message:
        return "PGVECTOR_MISSING", "pgvector extension missing"
    if sqlstate == "22P02" or "invalid input syntax" in message:
        return "INVALID_VECTOR_INPUT", "invalid input syntax for vector"
    return "INDEX_UNAVAILABLE", "vector index unavailable"


class VectorSearchService:
    """Authorizes, validates, executes, and logs vector searches.

    Every call writes exactly one search log row; failures carry a result
    count of -1.
    """

    def __init__(
        self,
        *,
        tokens: TokenAuthority,
        settings: Settings,
        session_factory: Callable[[], AsyncSession],
        index: VectorIndex | None = None,
    ) -> None:
        self._tokens = tokens
        self._settings = settings
        self._session_factory = session_factory
        self._index = index or PgVectorIndex()

    async def search(
        self,
        session: AsyncSession,
        request: SearchRequest,
        presented_token: str | None,
    ) -> SearchOutcome:
        start = time.monotonic()
        limit = self._settings.vector_search_default_limit if request.limit is None else request.limit
        threshold = (
            self._settings.vector_search_default_threshold
            if request.threshold is None
            else request.threshold
        )
        try:
            await self._authorize(session, request, presented_token)
            self._validate(request, limit, threshold)
            try:
                results = await self._index.query(
                    session,
                    tenant_id=request.tenant_id,
                    embedding=request.embedding,
                    limit=limit,
                    threshold=threshold,
                    filters=request.filters,
                )
            except SQLAlchemyError as exc:
                await session.rollback()
                code, hint = classify_index_error(exc)
                logger.error("vector_search_index_failed tenant_id=%s code=%s", request.tenant_id, code, exc_info=exc)
                raise IndexUnavailableError("Vector search failed", hint=hint) from exc
        except RelayError as exc:
            await self._log(
                request,
                result_count=FAILED_RESULT_COUNT,
                limit=limit,
                threshold=threshold,
                start=start,
                error_code=_log_code(exc),
                error_message=exc.message,
            )
            raise
        outcome = SearchOutcome(
            results=results,
            execution_time_ms=_elapsed_ms(start),
            limit=limit,
            threshold=threshold,
        )
        await self._log(
            request,
            result_count=len(results),
            limit=limit,
            threshold=threshold,
            start=start,
        )
        return outcome

    async def _authorize(self, session: AsyncSession, request: SearchRequest, presented_token: str | None) -> None:
        if await self._tokens.verify(session, request.tenant_id, None, presented_token, SCOPE_TENANT):
            return
        if request.message_id and await self._tokens.verify(
            session, request.tenant_id, request.message_id, presented_token, SCOPE_RESOURCE
        ):
            return
        raise AuthError("Invalid search token")

    def _validate(self, request: SearchRequest, limit: int, threshold: float) -> None:
        dimension = int(self._settings.vector_dimension)
        if len(request.embedding) != dimension:
            raise VectorDimensionError(
                f"Query embedding has {len(request.embedding)} dimensions, expected {dimension}",
                hint=f"expected dimension {dimension}",
            )
        if not all(math.isfinite(value) for value in request.embedding):
            raise ValidationError("Query embedding contains non-finite values")
        if limit < 1 or limit > self._settings.vector_search_max_limit:
            raise ValidationError(f"limit must be between 1 and {self._settings.vector_search_max_limit}")
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be between 0 and 1")

    async def _log(
        self,
        request: SearchRequest,
        *,
        result_count: int,
        limit: int,
        threshold: float,
        start: float,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        # Separate session so a failed search transaction cannot swallow its own log row.
        try:
            async with self._session_factory() as log_session:
                await search_logs_repo.add_search_log(
                    log_session,
                    tenant_id=request.tenant_id,
                    result_count=result_count,
                    threshold=threshold,
                    limit=limit,
                    execution_time_ms=_elapsed_ms(start),
                    filters=request.filters or None,
                    error_code=error_code,
                    error_message=error_message,
                )
                await log_session.commit()
        except SQLAlchemyError:
            # Best effort: observability must never change the search result.
            logger.warning("vector_search_log_failed tenant_id=%s", request.tenant_id, exc_info=True)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _log_code(exc: RelayError) -> str:
    # Index failures log the specific classification rather than the generic code.
    if isinstance(exc, IndexUnavailableError) and exc.__cause__ is not None:
        return classify_index_error(exc.__cause__)[0]
    return exc.code

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Header, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.apps.api.deps import Caller, get_caller, get_db, get_runtime
from ragrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ragrelay.core.errors import AuthError, NotFoundError, ValidationError
from ragrelay.domain.models import Document
from ragrelay.domain.states import VECTORS_DELETED
from ragrelay.persistence.repos import deliveries as deliveries_repo
from ragrelay.persistence.repos import documents as documents_repo
from ragrelay.persistence.repos import vectors as vectors_repo
from ragrelay.services.ingestion.intake import IngestItem
from ragrelay.services.runtime import RelayRuntime
from ragrelay.services.tokens import SCOPE_RESOURCE, bearer_token


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/rag", tags=["documents"], responses=DEFAULT_ERROR_RESPONSES)


class DocumentResponse(BaseModel):
    id: str
    tenant_id: str
    filename: str
    content_type: str
    file_size: int
    source: str
    status: str
    failure_reason: str | None
    has_markdown: bool
    created_at: str | None
    updated_at: str | None


class DocumentAccepted(BaseModel):
    success: bool = True
    document_id: str
    status: str
    status_url: str


class IngestDocument(BaseModel):
    title: str = ""
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class IngestRequest(BaseModel):
    documents: list[IngestDocument]

    # Tenant comes from the gateway headers, never from the body.
    model_config = {"extra": "forbid"}


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(document: Document) -> DocumentResponse:
    return DocumentResponse(
        id=document.id,
        tenant_id=document.tenant_id,
        filename=document.filename,
        content_type=document.content_type,
        file_size=document.file_size,
        source=document.source,
        status=document.status,
        failure_reason=document.failure_reason,
        has_markdown=bool(document.processed_markdown),
        created_at=_iso(document.created_at),
        updated_at=_iso(document.updated_at),
    )


def _status_url(document_id: str) -> str:
    return f"/v1/rag/documents/{document_id}/status"


def _parse_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ValidationError("metadata must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("metadata must be a JSON object")
    return parsed


@router.post("/documents", status_code=202, response_model=DocumentAccepted)
async def upload_document(
    file: UploadFile = File(...),
    metadata: str | None = Form(default=None),
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> DocumentAccepted:
    # Read at most one byte past the limit so oversized uploads fail without buffering them whole.
    body = await file.read(runtime.settings.max_upload_bytes + 1)
    document = await runtime.intake.submit_upload(
        db,
        tenant_id=caller.tenant_id,
        user_email=caller.user_email,
        filename=file.filename or "",
        declared_content_type=file.content_type,
        data=body,
        metadata=_parse_metadata(metadata),
    )
    return DocumentAccepted(document_id=document.id, status=document.status, status_url=_status_url(document.id))


@router.post("/ingest", status_code=202)
async def ingest_documents(
    payload: IngestRequest,
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    documents = await runtime.intake.submit_text(
        db,
        tenant_id=caller.tenant_id,
        user_email=caller.user_email,
        items=[
            IngestItem(title=item.title, content=item.content, metadata=item.metadata)
            for item in payload.documents
        ],
    )
    return {
        "success": True,
        "documents": [
            DocumentAccepted(document_id=doc.id, status=doc.status, status_url=_status_url(doc.id)).model_dump()
            for doc in documents
        ],
    }


@router.get("/documents", response_model=list[DocumentResponse])
async def list_documents(
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> list[DocumentResponse]:
    documents = await documents_repo.list_documents(db, caller.tenant_id)
    return [_to_response(document) for document in documents]


@router.get("/documents/{document_id}/status")
async def document_status(
    document_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    document = await documents_repo.get_document(db, caller.tenant_id, document_id)
    if document is None:
        raise NotFoundError("Document not found")
    delivery = await deliveries_repo.latest_delivery_for_resource(
        db, tenant_id=caller.tenant_id, resource_id=document.id
    )
    vector_count = await vectors_repo.count_vectors(db, tenant_id=caller.tenant_id, document_id=document.id)
    return {
        "document": _to_response(document).model_dump(),
        "vector_count": vector_count,
        "delivery": None
        if delivery is None
        else {
            "id": delivery.id,
            "status": delivery.status,
            "retry_count": delivery.retry_count,
            "max_retries": delivery.max_retries,
            "next_retry_at": _iso(delivery.next_retry_at),
            "last_error": delivery.last_error,
        },
    }


@router.post("/documents/{document_id}/retry", status_code=202, response_model=DocumentAccepted)
async def retry_document(
    document_id: str,
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> DocumentAccepted:
    document = await runtime.intake.retry_document(db, tenant_id=caller.tenant_id, document_id=document_id)
    return DocumentAccepted(document_id=document.id, status=document.status, status_url=_status_url(document.id))


@router.get("/documents/{document_id}/markdown")
async def document_markdown(
    document_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    document = await documents_repo.get_document(db, caller.tenant_id, document_id)
    if document is None:
        raise NotFoundError("Document not found")
    if not document.processed_markdown:
        raise ValidationError("Document has not been processed yet", hint=f"status is {document.status}")
    return {
        "document_id": document.id,
        "filename": document.filename,
        "status": document.status,
        "markdown": document.processed_markdown,
    }


@router.get("/documents/{document_id}/content")
async def download_document(
    document_id: str,
    authorization: str | None = Header(default=None),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Called by the processing service; authorized by the document's resource token.
    document = await documents_repo.get_document_by_id(db, document_id)
    if document is None:
        raise NotFoundError("Document not found")
    if not await runtime.tokens.verify(
        db, document.tenant_id, document.id, bearer_token(authorization), SCOPE_RESOURCE
    ):
        raise AuthError("Invalid download token")
    if document.raw_content is None:
        raise NotFoundError("Document content is not available")
    return Response(
        content=document.raw_content,
        media_type=document.content_type,
        headers={"Content-Disposition": f'attachment; filename="{document.filename}"'},
    )


@router.get("/vectors/stats")
async def vector_stats(
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    stats = await vectors_repo.vector_stats(db, tenant_id=caller.tenant_id)
    return {"tenant_id": caller.tenant_id, **stats}


@router.delete("/documents/{document_id}/vectors")
async def delete_document_vectors(
    document_id: str,
    caller: Caller = Depends(get_caller),
    runtime: RelayRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    document = await documents_repo.get_document(db, caller.tenant_id, document_id)
    if document is None:
        raise NotFoundError("Document not found")
    if await vectors_repo.count_vectors(db, tenant_id=caller.tenant_id, document_id=document.id) == 0:
        raise NotFoundError("Document has no vectors")
    # Validate the transition before deleting so a refused move leaves vectors intact.
    transition = runtime.lifecycle.apply(document, VECTORS_DELETED)
    deleted = await vectors_repo.delete_vectors(db, tenant_id=caller.tenant_id, document_id=document.id)
    await db.commit()
    await runtime.lifecycle.notify([transition])
    logger.info("document_vectors_deleted tenant_id=%s document_id=%s count=%s", caller.tenant_id, document.id, deleted)
    return {"success": True, "document_id": document.id, "vectors_deleted": deleted, "status": document.status}

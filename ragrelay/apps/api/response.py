from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"


class ErrorBody(BaseModel):
    # Flat error shape shared by user-facing routes and the processing-service callbacks.
    error: str
    message: str
    hint: str | None = None
    details: dict[str, Any] | None = None
    request_id: str | None = None


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    hint: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(
        error=code,
        message=message,
        hint=hint,
        details=details,
        request_id=get_request_id(request),
    )
    return body.model_dump(exclude_none=True)

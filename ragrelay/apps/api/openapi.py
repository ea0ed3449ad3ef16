from __future__ import annotations

from typing import Any

from ragrelay.apps.api.response import ErrorBody


def _error_example(*, code: str, message: str, hint: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": code, "message": message, "request_id": "req_example"}
    if hint:
        payload["hint"] = hint
    return payload


def _response(description: str, *, code: str, message: str, hint: str | None = None) -> dict[str, Any]:
    return {
        "model": ErrorBody,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, hint=hint)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Malformed payload", code="VALIDATION_ERROR", message="Malformed request payload"),
    401: _response("Missing or invalid token", code="AUTH_INVALID", message="Invalid callback token"),
    403: _response("Tenant mismatch", code="TENANT_MISMATCH", message="Tenant does not own this resource"),
    404: _response("Unknown resource", code="NOT_FOUND", message="Document not found"),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

SEARCH_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    503: _response(
        "Vector index unavailable",
        code="INDEX_UNAVAILABLE",
        message="Vector search failed",
        hint="pgvector extension missing",
    ),
}

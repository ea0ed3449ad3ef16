from __future__ import annotations

from typing import AsyncGenerator

from fastapi import HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.persistence.db import get_session
from ragrelay.services.runtime import RelayRuntime


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Caller(BaseModel):
    # Identity asserted by the upstream gateway, which owns session authentication.
    tenant_id: str
    user_email: str | None = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_caller(request: Request) -> Caller:
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required")
    user_email = (request.headers.get("X-User-Email") or "").strip() or None
    return Caller(tenant_id=tenant_id, user_email=user_email)


def get_runtime(request: Request) -> RelayRuntime:
    return request.app.state.runtime

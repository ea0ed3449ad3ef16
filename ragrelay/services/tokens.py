from __future__ import annotations

from datetime import datetime, timezone
import hmac
import secrets
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.persistence.repos import tokens as tokens_repo


TokenScope = Literal["tenant", "resource"]

SCOPE_TENANT: TokenScope = "tenant"
SCOPE_RESOURCE: TokenScope = "resource"

# 32 random bytes rendered as 64 hex chars.
TOKEN_BYTES = 32


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def tokens_match(expected: str | None, presented: str | None) -> bool:
    # Constant-time comparison; empty values never match.
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def bearer_token(authorization: str | None) -> str | None:
    # Accept "Bearer <token>" only; any other scheme is treated as absent.
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class TokenAuthority:
    """Issues and checks tenant- and resource-scoped callback tokens.

    Verification fails closed and returns a plain bool, so callers cannot tell
    whether the tenant or the token was wrong.
    """

    async def mint_tenant_token(self, session: AsyncSession, tenant_id: str) -> str:
        token = generate_token()
        await tokens_repo.upsert_tenant_token(session, tenant_id=tenant_id, token=token, now=_utc_now())
        await session.flush()
        return token

    async def mint_resource_token(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_id: str,
        *,
        resource_type: str,
    ) -> str:
        token = generate_token()
        await tokens_repo.upsert_resource_token(
            session,
            tenant_id=tenant_id,
            resource_id=resource_id,
            resource_type=resource_type,
            token=token,
            now=_utc_now(),
        )
        await session.flush()
        return token

    async def current_resource_token(
        self, session: AsyncSession, tenant_id: str, resource_id: str
    ) -> str | None:
        row = await tokens_repo.get_resource_token(session, resource_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return row.token

    async def verify(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_id: str | None,
        presented_token: str | None,
        scope: TokenScope,
    ) -> bool:
        if not tenant_id or not presented_token:
            return False
        if scope == SCOPE_TENANT:
            expected = await tokens_repo.get_tenant_token(session, tenant_id)
            return tokens_match(expected, presented_token)
        if scope == SCOPE_RESOURCE:
            if not resource_id:
                return False
            row = await tokens_repo.get_resource_token(session, resource_id)
            # Compare tenant in constant time too so both mismatches look identical.
            if row is None:
                return False
            tenant_ok = hmac.compare_digest(row.tenant_id.encode("utf-8"), tenant_id.encode("utf-8"))
            token_ok = tokens_match(row.token, presented_token)
            return tenant_ok and token_ok
        return False

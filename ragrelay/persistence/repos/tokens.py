from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.domain.models import ResourceToken, TenantToken


async def upsert_tenant_token(
    session: AsyncSession, *, tenant_id: str, token: str, now: datetime
) -> TenantToken:
    # One row per tenant; overwriting the token revokes the previous one.
    row = await session.get(TenantToken, tenant_id)
    if row is None:
        row = TenantToken(tenant_id=tenant_id, token=token, created_at=now, updated_at=now)
        session.add(row)
    else:
        row.token = token
        row.updated_at = now
    return row


async def get_tenant_token(session: AsyncSession, tenant_id: str) -> str | None:
    row = await session.get(TenantToken, tenant_id)
    return row.token if row is not None else None


async def upsert_resource_token(
    session: AsyncSession,
    *,
    tenant_id: str,
    resource_id: str,
    resource_type: str,
    token: str,
    now: datetime,
) -> ResourceToken:
    row = await session.get(ResourceToken, resource_id)
    if row is None:
        row = ResourceToken(
            resource_id=resource_id,
            tenant_id=tenant_id,
            resource_type=resource_type,
            token=token,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
    else:
        # Rotation keeps ownership fixed; a resource never changes tenant.
        row.token = token
        row.updated_at = now
    return row


async def get_resource_token(session: AsyncSession, resource_id: str) -> ResourceToken | None:
    return await session.get(ResourceToken, resource_id)

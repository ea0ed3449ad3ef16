from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ragrelay.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    if settings.database_url.startswith("sqlite"):
        # Test databases: a fresh connection per session so none outlives its event loop.
        return {"poolclass": NullPool}
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.api_db_pool_size)),
        "max_overflow": max(0, int(settings.api_db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }
    timeout_ms = int(settings.api_db_statement_timeout_ms)
    if timeout_ms > 0:
        options["connect_args"] = {"server_settings": {"statement_timeout": str(timeout_ms)}}
    return options


settings = get_settings()
engine = create_async_engine(settings.database_url, **_engine_options(settings))
# Handlers keep reading rows after commit, so commits must not expire them.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session

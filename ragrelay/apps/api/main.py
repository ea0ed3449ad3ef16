from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request

from ragrelay.apps.api.errors import install_exception_handlers
from ragrelay.apps.api.response import API_VERSION
from ragrelay.apps.api.routes.callbacks import router as callbacks_router
from ragrelay.apps.api.routes.chat import router as chat_router
from ragrelay.apps.api.routes.documents import router as documents_router
from ragrelay.apps.api.routes.health import router as health_router
from ragrelay.apps.api.routes.ops import router as ops_router
from ragrelay.apps.api.routes.search import router as search_router
from ragrelay.apps.api.routes.streams import router as streams_router
from ragrelay.core.config import get_settings
from ragrelay.core.logging import configure_logging
from ragrelay.persistence.db import SessionLocal
from ragrelay.services.runtime import RelayRuntime, build_runtime
from ragrelay.services.telemetry import record_request


_VERSIONED_ROUTERS = (
    health_router,
    documents_router,
    chat_router,
    # Processing-service callbacks authenticate with per-resource tokens, not gateway headers.
    callbacks_router,
    search_router,
    streams_router,
    ops_router,
)


def create_app(runtime: RelayRuntime | None = None) -> FastAPI:
    """Build the API around ``runtime``; tests pass one wired to fake transports."""
    configure_logging()
    settings = get_settings()
    runtime = runtime or build_runtime(session_factory=SessionLocal, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # The retry scheduler lives and dies with the API process.
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title=settings.app_name, version=API_VERSION, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):  # type: ignore[override]
        request.state.request_id = request.headers.get("X-Request-Id") or uuid4().hex
        started = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - started) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request.state.request_id)
        return response

    install_exception_handlers(app)

    for router in _VERSIONED_ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Load balancers check the bare path.
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()

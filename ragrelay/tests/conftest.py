from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any ragrelay module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="ragrelay-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'ragrelay.db')}"
os.environ["RETRY_SCHEDULER_ENABLED"] = "false"
os.environ["BROADCAST_RELAY_ENABLED"] = "false"
os.environ["BROADCAST_RELAY_ENABLED"] = "false"
os.environ["AUTOMATION_WEBHOOK_URL"] = "http://automation.test/webhook"
os.environ["APP_URL"] = "http://relay.test"

import pytest
from httpx import ASGITransport, AsyncClient

from ragrelay.core.config import get_settings
from ragrelay.domain.models import Base
from ragrelay.persistence.db import SessionLocal, engine
from ragrelay.services.runtime import build_runtime
from ragrelay.services.telemetry import reset_telemetry
from ragrelay.tests.utils.fakes import FakeArqPool, FakeClock, WebhookRecorder


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def clean_telemetry() -> None:
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def webhook() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def arq_pool() -> FakeArqPool:
    return FakeArqPool()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def runtime(settings, webhook, arq_pool, clock):
    relay = build_runtime(
        session_factory=SessionLocal,
        settings=settings,
        webhook_transport=webhook.transport,
        queue_pool=arq_pool,
        clock=clock,
    )
    yield relay
    await relay.stop()


@pytest.fixture
async def client(runtime):
    from ragrelay.apps.api.main import create_app

    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

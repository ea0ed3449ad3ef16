from __future__ import annotations

from typing import Any

from httpx import ASGITransport, AsyncClient

from ragrelay.apps.api.main import create_app
from ragrelay.persistence.db import SessionLocal
from ragrelay.services.runtime import build_runtime
from ragrelay.services.search import SearchHit
from ragrelay.tests.utils.fakes import embedding


TENANT = {"X-Tenant-Id": "t1"}


class StaticIndex:
    # Index double for exercising the HTTP surface without pgvector.
    def __init__(self, hits: list[SearchHit]) -> None:
        self.hits = hits
        self.calls: list[dict[str, Any]] = []

    async def query(self, session, **kwargs: Any) -> list[SearchHit]:
        self.calls.append(kwargs)
        return self.hits


async def _tenant_token(client: AsyncClient) -> str:
    resp = await client.post("/v1/rag/tenant-token", headers=TENANT)
    assert resp.status_code == 200
    return resp.json()["token"]


async def test_health_is_public(client) -> None:
    for path in ("/health", "/v1/health"):
        resp = await client.get(path)
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


async def test_search_without_pgvector_reports_index_unavailable(client, settings) -> None:
    token = await _tenant_token(client)

    resp = await client.post(
        "/v1/rag/vector-search",
        json={"tenant_id": "t1", "embedding": embedding(settings.vector_dimension)},
        headers={"X-Callback-Token": token},
    )

    # The SQLite test database has no vector operators, so the query itself fails.
    assert resp.status_code == 503
    assert resp.json()["error"] == "INDEX_UNAVAILABLE"
    logs = (await client.get("/v1/rag/search-logs", headers=TENANT)).json()["logs"]
    assert len(logs) == 1
    assert logs[0]["result_count"] == -1


async def test_search_rejects_bad_token_and_dimension(client, settings) -> None:
    token = await _tenant_token(client)

    unauthorized = await client.post(
        "/v1/rag/vector-search",
        json={"tenant_id": "t1", "embedding": embedding(settings.vector_dimension)},
        headers={"Authorization": "Bearer nope"},
    )
    assert unauthorized.status_code == 401

    # The token belongs to t1, so naming another tenant fails the same way.
    cross_tenant = await client.post(
        "/v1/rag/vector-search",
        json={"tenant_id": "t2", "embedding": embedding(settings.vector_dimension)},
        headers={"X-Callback-Token": token},
    )
    assert cross_tenant.status_code == 401

    short = await client.post(
        "/v1/rag/vector-search",
        json={"tenant_id": "t1", "query_embedding": embedding(3)},
        headers={"X-Callback-Token": token},
    )
    assert short.status_code == 400
    assert short.json()["error"] == "DIMENSION_MISMATCH"

    logs = (await client.get("/v1/rag/search-logs", headers=TENANT)).json()["logs"]
    assert {log["result_count"] for log in logs} == {-1}


async def test_search_returns_ranked_hits(settings, webhook, arq_pool, clock) -> None:
    index = StaticIndex(
        [
            SearchHit(document_id="doc-1", chunk_index=0, chunk_text="Refunds take 14 days.", similarity=0.91, metadata={}),
            SearchHit(document_id="doc-2", chunk_index=3, chunk_text="Store credit policy.", similarity=0.74, metadata={"page": 2}),
        ]
    )
    runtime = build_runtime(
        session_factory=SessionLocal,
        settings=settings,
        webhook_transport=webhook.transport,
        queue_pool=arq_pool,
        clock=clock,
        index=index,
    )
    app = create_app(runtime)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            token = await _tenant_token(client)
            resp = await client.post(
                "/v1/rag/vector-search",
                json={
                    "tenant_id": "t1",
                    "embedding": embedding(settings.vector_dimension),
                    "limit": 2,
                    "threshold": 0.5,
                    "filters": {"document_id": "doc-1"},
                },
                headers={"Authorization": f"Bearer {token}"},
            )
            logs = (await client.get("/v1/rag/search-logs", headers=TENANT)).json()["logs"]
    finally:
        await runtime.stop()

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["count"] == 2
    assert [hit["document_id"] for hit in body["results"]] == ["doc-1", "doc-2"]
    assert body["limit"] == 2
    assert body["threshold"] == 0.5
    assert index.calls[0]["filters"] == {"document_id": "doc-1"}
    assert logs[0]["result_count"] == 2


async def test_ops_metrics_reports_process_counters(client, runtime) -> None:
    resp = await client.get("/v1/rag/ops/metrics", headers=TENANT)

    assert resp.status_code == 200
    body = resp.json()
    assert body["publishes_in_flight"] == 0
    assert body["streams"]["open"] == 0
    assert "5m" in body["p95_latency_ms"]

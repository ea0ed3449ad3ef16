from __future__ import annotations

from httpx import AsyncClient

from ragrelay.domain.states import DELIVERY_PENDING, PROCESSING, READY, VECTORS_DELETED
from ragrelay.services.broadcast import TOPIC_KNOWLEDGE
from ragrelay.tests.utils.fakes import RecordingHandle, embedding


TENANT = {"X-Tenant-Id": "t1", "X-User-Email": "owner@example.com"}
OTHER_TENANT = {"X-Tenant-Id": "t2"}


async def _upload(client: AsyncClient, runtime, *, filename: str = "report.pdf", data: bytes = b"%PDF-1.4 body") -> dict:
    resp = await client.post(
        "/v1/rag/documents",
        files={"file": (filename, data, "application/pdf")},
        headers=TENANT,
    )
    assert resp.status_code == 202, resp.text
    # Publishing runs in the background; settle it before asserting on the transport.
    await runtime.dispatcher.drain()
    return resp.json()


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def test_upload_returns_immediately_and_publishes(client, runtime, webhook) -> None:
    body = await _upload(client, runtime)

    assert body["success"] is True
    assert body["status"] == PROCESSING
    event = webhook.requests[-1]
    assert event["action"] == "document-processing"
    assert event["tenant_id"] == "t1"
    assert event["resource_id"] == body["document_id"]
    assert event["original_filename"] == "report.pdf"
    assert event["file_size"] == len(b"%PDF-1.4 body")

    status = (await client.get(f"/v1/rag/documents/{body['document_id']}/status", headers=TENANT)).json()
    assert status["document"]["status"] == PROCESSING
    assert status["delivery"] is None


async def test_upload_validation_and_gateway_identity(client) -> None:
    missing_tenant = await client.post("/v1/rag/documents", files={"file": ("a.pdf", b"x", "application/pdf")})
    assert missing_tenant.status_code == 401

    unsupported = await client.post(
        "/v1/rag/documents", files={"file": ("run.exe", b"MZ", "application/octet-stream")}, headers=TENANT
    )
    assert unsupported.status_code == 400
    assert unsupported.json()["error"] == "VALIDATION_ERROR"
    assert ".pdf" in unsupported.json()["hint"]

    empty = await client.post("/v1/rag/documents", files={"file": ("a.pdf", b"", "application/pdf")}, headers=TENANT)
    assert empty.status_code == 400


async def test_webhook_outage_is_parked_in_retry_store(client, runtime, webhook) -> None:
    webhook.go_down()
    body = await _upload(client, runtime)

    status = (await client.get(f"/v1/rag/documents/{body['document_id']}/status", headers=TENANT)).json()
    # The caller is never told about the outage; the record carries it.
    assert status["document"]["status"] == PROCESSING
    assert status["delivery"]["status"] == DELIVERY_PENDING
    assert status["delivery"]["retry_count"] == 0

    deliveries = (await client.get("/v1/rag/deliveries", headers=TENANT)).json()["deliveries"]
    assert [item["id"] for item in deliveries] == [status["delivery"]["id"]]
    assert (await client.get("/v1/rag/deliveries", headers=OTHER_TENANT)).json()["deliveries"] == []


async def test_download_requires_the_resource_token(client, runtime, webhook) -> None:
    body = await _upload(client, runtime, data=b"raw-bytes")
    token = webhook.requests[-1]["callback_token"]
    url = f"/v1/rag/documents/{body['document_id']}/content"

    ok = await client.get(url, headers=_bearer(token))
    assert ok.status_code == 200
    assert ok.content == b"raw-bytes"

    assert (await client.get(url, headers=_bearer("wrong"))).status_code == 401
    assert (await client.get(url)).status_code == 401


async def test_markdown_callback_marks_ready_and_is_idempotent(client, runtime, webhook) -> None:
    body = await _upload(client, runtime)
    document_id = body["document_id"]
    token = webhook.requests[-1]["callback_token"]

    early = await client.get(f"/v1/rag/documents/{document_id}/markdown", headers=TENANT)
    assert early.status_code == 400

    for _ in range(2):
        resp = await client.post(
            f"/v1/rag/document-callback/{document_id}",
            json={"tenant_id": "t1", "markdown": "# Report\n\nBody"},
            headers=_bearer(token),
        )
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["status"] == READY

    markdown = (await client.get(f"/v1/rag/documents/{document_id}/markdown", headers=TENANT)).json()
    assert markdown["markdown"] == "# Report\n\nBody"


async def test_callback_auth_failures_are_distinguished(client, runtime, webhook) -> None:
    body = await _upload(client, runtime)
    document_id = body["document_id"]
    token = webhook.requests[-1]["callback_token"]

    bad_token = await client.post(
        f"/v1/rag/document-callback/{document_id}",
        json={"tenant_id": "t1", "markdown": "x"},
        headers=_bearer("not-the-token"),
    )
    assert bad_token.status_code == 401
    assert bad_token.json()["error"] == "AUTH_INVALID"

    wrong_tenant = await client.post(
        f"/v1/rag/document-callback/{document_id}",
        json={"tenant_id": "t2", "markdown": "x"},
        headers=_bearer(token),
    )
    assert wrong_tenant.status_code == 403
    assert wrong_tenant.json()["error"] == "TENANT_MISMATCH"

    unknown = await client.post(
        "/v1/rag/document-callback/does-not-exist",
        json={"tenant_id": "t1", "markdown": "x"},
        headers=_bearer(token),
    )
    assert unknown.status_code == 404

    # Nothing above changed the document.
    status = (await client.get(f"/v1/rag/documents/{document_id}/status", headers=TENANT)).json()
    assert status["document"]["status"] == PROCESSING


async def test_vector_batch_skips_bad_rows(client, runtime, webhook, settings) -> None:
    body = await _upload(client, runtime)
    document_id = body["document_id"]
    event = webhook.requests[-1]
    dim = settings.vector_dimension
    vectors = [
        {"chunk_index": 0, "chunk_text": "zero", "embedding": embedding(dim)},
        {"chunk_index": 1, "chunk_text": "one", "embedding": embedding(dim - 1)},
        {"chunk_index": 2, "chunk_text": "two", "embedding": embedding(dim)},
        {"chunk_index": 3, "chunk_text": "three", "embedding": embedding(dim + 1)},
        {"chunk_index": 4, "chunk_text": "four", "embedding": embedding(dim)},
    ]

    resp = await client.post(
        event["vector_callback_url"].replace("http://relay.test", ""),
        json={"tenant_id": "t1", "vectors": vectors},
        headers={"X-Callback-Token": event["callback_token"]},
    )

    assert resp.status_code == 200, resp.text
    assert resp.json()["vectors_stored"] == 3
    assert resp.json()["vectors_skipped"] == 2
    assert resp.json()["status"] == READY
    stats = (await client.get("/v1/rag/vectors/stats", headers=TENANT)).json()
    assert stats["total_vectors"] == 3

    # A bearer header is not accepted on the vector route.
    confused = await client.post(
        f"/v1/rag/callback/{event['callback_urls']['vectors'].rsplit('/', 1)[-1]}",
        json={"tenant_id": "t1", "vectors": vectors},
        headers=_bearer(event["callback_token"]),
    )
    assert confused.status_code == 401

    all_bad = await client.post(
        event["vector_callback_url"].replace("http://relay.test", ""),
        json={"tenant_id": "t1", "vectors": [vectors[1]]},
        headers={"X-Callback-Token": event["callback_token"]},
    )
    assert all_bad.status_code == 400
    assert all_bad.json()["error"] == "DIMENSION_MISMATCH"

    # Correctly sized embeddings refused for other reasons are a plain validation failure.
    no_text = await client.post(
        event["vector_callback_url"].replace("http://relay.test", ""),
        json={"tenant_id": "t1", "vectors": [{"chunk_index": 0, "embedding": embedding(dim)}, vectors[1]]},
        headers={"X-Callback-Token": event["callback_token"]},
    )
    assert no_text.status_code == 400
    assert no_text.json()["error"] == "VALIDATION_ERROR"
    assert "chunk_text" in no_text.json()["message"]

    deleted = await client.delete(f"/v1/rag/documents/{document_id}/vectors", headers=TENANT)
    assert deleted.status_code == 200
    assert deleted.json()["status"] == VECTORS_DELETED
    again = await client.delete(f"/v1/rag/documents/{document_id}/vectors", headers=TENANT)
    assert again.status_code == 404


async def test_error_callback_fails_document_and_retry_reissues_token(client, runtime, webhook) -> None:
    body = await _upload(client, runtime)
    document_id = body["document_id"]
    first_token = webhook.requests[-1]["callback_token"]

    failed = await client.post(
        f"/v1/rag/document-callback/{document_id}",
        json={"tenant_id": "t1", "error": "unreadable pdf"},
        headers=_bearer(first_token),
    )
    assert failed.json()["status"] == "failed"

    retried = await client.post(f"/v1/rag/documents/{document_id}/retry", headers=TENANT)
    assert retried.status_code == 202
    assert retried.json()["status"] == PROCESSING
    await runtime.dispatcher.drain()
    second_token = webhook.requests[-1]["callback_token"]
    assert second_token != first_token

    stale = await client.post(
        f"/v1/rag/document-callback/{document_id}",
        json={"tenant_id": "t1", "markdown": "late"},
        headers=_bearer(first_token),
    )
    assert stale.status_code == 401

    # Retrying while the document is still in flight is refused.
    conflict = await client.post(f"/v1/rag/documents/{document_id}/retry", headers=TENANT)
    assert conflict.status_code == 409


async def test_text_ingest_creates_one_document_per_entry(client, runtime, webhook) -> None:
    resp = await client.post(
        "/v1/rag/ingest",
        json={"documents": [{"title": "faq.txt", "content": "Q and A"}, {"title": "", "content": "Notes"}]},
        headers=TENANT,
    )
    assert resp.status_code == 202
    await runtime.dispatcher.drain()

    assert len(resp.json()["documents"]) == 2
    assert {request["action"] for request in webhook.requests} == {"vectorize-content"}
    listed = (await client.get("/v1/rag/documents", headers=TENANT)).json()
    assert {doc["source"] for doc in listed} == {"ingest"}
    assert (await client.get("/v1/rag/documents", headers=OTHER_TENANT)).json() == []


async def test_knowledge_stream_receives_document_events(client, runtime, webhook) -> None:
    handle = RecordingHandle()
    await runtime.hub.register("t1", "kb-client", handle, topic=TOPIC_KNOWLEDGE)
    outsider = RecordingHandle()
    await runtime.hub.register("t2", "kb-client", outsider, topic=TOPIC_KNOWLEDGE)

    body = await _upload(client, runtime)
    await client.post(
        f"/v1/rag/document-callback/{body['document_id']}",
        json={"tenant_id": "t1", "markdown": "# done"},
        headers=_bearer(webhook.requests[-1]["callback_token"]),
    )

    assert handle.types()[0] == "document-uploaded"
    statuses = [event["status"] for event in handle.events if event["type"] == "document-status"]
    assert statuses == [PROCESSING, "markdown_received", READY]
    assert outsider.events == []

from __future__ import annotations

import json

from ragrelay.services.events import (
    ACTION_PROCESS_CHAT,
    ACTION_VECTORIZE_CONTENT,
    build_chat_event,
    build_document_event,
    serialize_payload,
)


def test_document_event_carries_download_and_callback_urls(settings) -> None:
    event = build_document_event(
        settings=settings,
        tenant_id="t1",
        document_id="doc-1",
        callback_id="cb-1",
        callback_token="tok",
        filename="report.pdf",
        content_type="application/pdf",
        file_size=42,
    )
    wire = event.to_wire()

    assert wire["source"] == "onboarding"
    assert wire["action"] == "document-processing"
    assert wire["tenant_id"] == "t1"
    assert wire["resource_id"] == wire["document_id"] == "doc-1"
    assert wire["download_url"] == "http://relay.test/v1/rag/documents/doc-1/content"
    assert wire["callback_urls"] == {
        "markdown": "http://relay.test/v1/rag/document-callback/doc-1",
        "vectors": "http://relay.test/v1/rag/callback/cb-1",
    }
    assert wire["markdown_callback_url"] == wire["callback_urls"]["markdown"]
    assert wire["vector_callback_url"] == wire["callback_url"] == wire["callback_urls"]["vectors"]
    assert wire["callback_token"] == "tok"
    assert wire["original_filename"] == "report.pdf"
    assert wire["file_size"] == 42
    assert "extra" not in wire
    json.dumps(wire)


def test_document_event_action_and_metadata(settings) -> None:
    event = build_document_event(
        settings=settings,
        tenant_id="t1",
        document_id="doc-1",
        callback_id="cb-1",
        callback_token="tok",
        filename="note.txt",
        content_type="text/plain",
        file_size=3,
        action=ACTION_VECTORIZE_CONTENT,
        metadata={"topic": "billing"},
    )
    assert event.delivery_type == ACTION_VECTORIZE_CONTENT
    assert event.to_wire()["metadata"] == {"topic": "billing"}


def test_chat_event_names_reply_route_and_queue(settings) -> None:
    wire = build_chat_event(
        settings=settings,
        tenant_id="t1",
        conversation_id="c1",
        message_id="m1",
        message="What is our refund policy?",
        callback_token="tok",
    ).to_wire()

    assert wire["action"] == ACTION_PROCESS_CHAT
    assert wire["resource_type"] == "chat_message"
    assert wire["callback_urls"] == {"reply": "http://relay.test/v1/rag/chat-callback/m1"}
    assert wire["customer_message"] == "What is our refund policy?"
    assert wire["vector_search_url"] == "http://relay.test/v1/rag/vector-search"
    assert wire["queue_name"] == settings.response_queue_name


def test_serialized_payload_contains_searchable_resource_marker() -> None:
    text = serialize_payload({"tenant_id": "t1", "resource_id": "doc-1", "nested": {"b": 1, "a": 2}})
    assert '"resource_id":"doc-1"' in text
    assert text.index('"a"') < text.index('"b"')

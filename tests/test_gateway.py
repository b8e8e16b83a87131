"""Tests for the HTTP gateway"""

import base64
import json

import pytest
from fastapi.testclient import TestClient

from fakes import FakeProducer
from src.config import Settings
from src.errors import ProducerError
from src.gateway.main import create_app
from src.storage.document_store import MemoryDocumentStore

USER = {"X-User-Id": "user-1", "X-Real-IP": "203.0.113.9"}


def make_client(producer=None, **overrides) -> TestClient:
    settings = Settings(
        store_backend="memory",
        rate_limit_per_minute=overrides.pop("rate_limit_per_minute", 60),
        admin_api_key="secret",
        **overrides,
    )
    app = create_app(settings, store=MemoryDocumentStore(), producer=producer or FakeProducer(["Hel", "lo"]))
    return TestClient(app)


def sse_payloads(body: str) -> list:
    payloads = []
    for line in body.splitlines():
        if line.startswith("data: "):
            data = line[6:]
            payloads.append(data if data == "[DONE]" else json.loads(data))
    return payloads


def test_health():
    with make_client() as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_send_message():
    """Non-streaming turn returns the reply and transcript"""
    with make_client() as client:
        response = client.post("/v1/chats/chat-1/messages", json={"content": "What is asthma?"}, headers=USER)

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "completed"
    assert body["persisted"] is True
    assert body["message"]["content"] == "Hello"
    assert [m["role"] for m in body["messages"]] == ["user", "assistant"]


def test_missing_user_header():
    with make_client() as client:
        response = client.post("/v1/chats/chat-1/messages", json={"content": "Hi"})

    assert response.status_code == 401


def test_rate_limited_request():
    """Over-limit turns get 429 with Retry-After"""
    with make_client(rate_limit_per_minute=1) as client:
        first = client.post("/v1/chats/chat-1/messages", json={"content": "Hi"}, headers=USER)
        second = client.post("/v1/chats/chat-1/messages", json={"content": "Hi again"}, headers=USER)

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["error"] == "rate_limited"
    assert int(second.headers["Retry-After"]) > 0
    assert second.headers["X-RateLimit-Limit"] == "1"


def test_invalid_attachment():
    with make_client() as client:
        response = client.post(
            "/v1/chats/chat-1/messages",
            json={"content": "", "attachments": [{"type": "image", "data": "%%%"}]},
            headers=USER,
        )

    assert response.status_code == 422
    assert response.json()["error"] == "invalid_message"


def test_image_attachment_accepted():
    data = base64.b64encode(b"fake image bytes").decode()
    with make_client() as client:
        response = client.post(
            "/v1/chats/chat-1/messages",
            json={"attachments": [{"type": "image", "data": data, "mimeType": "image/png"}]},
            headers=USER,
        )

    assert response.status_code == 200
    user_message = response.json()["messages"][0]
    assert user_message["metadata"]["messageType"] == "image_analysis"


def test_streaming_turn():
    """Streaming relays each delta, a finish chunk and [DONE]"""
    with make_client(FakeProducer(["Hel", "lo", " there"])) as client:
        response = client.post(
            "/v1/chats/chat-1/messages",
            json={"content": "What is asthma?", "stream": True},
            headers=USER,
        )
        stored = client.get("/v1/chats/chat-1", headers=USER)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    payloads = sse_payloads(response.text)
    deltas = [p["choices"][0]["delta"].get("content") for p in payloads[:-2]]
    assert deltas == ["Hel", "lo", " there"]
    assert payloads[-2]["choices"][0]["finish_reason"] == "stop"
    assert payloads[-1] == "[DONE]"

    assert stored.status_code == 200
    assert [m["content"] for m in stored.json()["messages"]] == ["What is asthma?", "Hello there"]


def test_streaming_producer_error():
    producer = FakeProducer(["Par"], error=ProducerError("provider down"))
    with make_client(producer) as client:
        response = client.post(
            "/v1/chats/chat-1/messages",
            json={"content": "What is asthma?", "stream": True},
            headers=USER,
        )

    payloads = sse_payloads(response.text)
    assert any("error" in p for p in payloads if isinstance(p, dict))
    assert payloads[-2]["choices"][0]["finish_reason"] == "error"


def test_chat_management():
    """List, read, delete and clear chats"""
    with make_client() as client:
        for chat_id in ("a", "b"):
            client.post(f"/v1/chats/{chat_id}/messages", json={"content": "What is asthma?"}, headers=USER)

        listed = client.get("/v1/chats", headers=USER).json()
        assert {c["id"] for c in listed} == {"a", "b"}
        assert all(c["message_count"] == 2 for c in listed)

        assert client.get("/v1/chats/a", headers={"X-User-Id": "someone-else"}).status_code == 404
        assert client.delete("/v1/chats/a", headers=USER).status_code == 200
        assert client.get("/v1/chats/a", headers=USER).status_code == 404

        cleared = client.delete("/v1/chats", headers=USER)
        assert cleared.json() == {"deleted": 1}
        assert client.get("/v1/chats", headers=USER).json() == []


def test_unshared_chat_is_hidden():
    with make_client() as client:
        client.post("/v1/chats/chat-1/messages", json={"content": "Hi"}, headers=USER)
        response = client.get("/v1/share/chat-1")

    assert response.status_code == 404


def test_rate_limit_info():
    with make_client() as client:
        client.post("/v1/chats/chat-1/messages", json={"content": "Hi"}, headers=USER)
        info = client.get("/v1/rate-limit", headers=USER).json()

    assert info["current"] == 1
    assert info["remaining"] == 59
    assert info["limit"] == 60


def test_admin_cleanup_requires_key():
    with make_client() as client:
        client.post("/v1/chats/chat-1/messages", json={"content": "Hi"}, headers=USER)
        denied = client.post("/v1/admin/cleanup", headers={"X-Admin-Key": "wrong"})
        allowed = client.post("/v1/admin/cleanup", headers={"X-Admin-Key": "secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {"cleaned": 1}


def test_edge_limit_sets_retry_after():
    """The 51st POST of the day is refused at the edge with rate-limit headers"""
    headers = {"X-User-Id": "user-1", "X-Real-IP": "198.51.100.7"}
    with make_client(rate_limit_per_minute=100) as client:
        responses = [
            client.post(f"/v1/chats/chat-{i}/messages", json={"content": "Hi"}, headers=headers)
            for i in range(51)
        ]

    assert all(r.status_code == 200 for r in responses[:50])
    assert responses[49].headers["X-RateLimit-Remaining"] == "0"
    refused = responses[50]
    assert refused.status_code == 429
    assert "Retry-After" in refused.headers
    assert refused.headers["X-RateLimit-Limit"] == "50"


@pytest.mark.parametrize("limit, admitted", [("2/minute", 2), ("3/hour", 3)])
def test_edge_limit_from_settings(limit, admitted):
    """Each app enforces the edge limit it was created with"""
    headers = {"X-User-Id": "user-1", "X-Real-IP": "198.51.100.8"}
    with make_client(edge_rate_limit=limit) as client:
        statuses = [
            client.post(f"/v1/chats/chat-{i}/messages", json={"content": "Hi"}, headers=headers).status_code
            for i in range(admitted + 1)
        ]

    assert statuses == [200] * admitted + [429]


def test_edge_counters_are_per_app():
    headers = {"X-User-Id": "user-1", "X-Real-IP": "198.51.100.9"}
    with make_client(edge_rate_limit="1/minute") as client:
        assert client.post("/v1/chats/a/messages", json={"content": "Hi"}, headers=headers).status_code == 200
    with make_client(edge_rate_limit="1/minute") as client:
        assert client.post("/v1/chats/a/messages", json={"content": "Hi"}, headers=headers).status_code == 200

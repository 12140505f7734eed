"""Tests for the FastAPI transport proxy."""

from __future__ import annotations

import json
from typing import Any

import httpx
from fastapi.testclient import TestClient

from tutorchat.api.app import AppDependencies, create_app
from tutorchat.backend.client import BackendClient
from tutorchat.config import Settings
from tutorchat.sse import SSEFrameParser

BACKEND_URL = "http://backend.test/api/v1"
AUTH = {"Authorization": "Bearer tok"}


def backend_sse(*events: tuple[str, dict[str, Any]]) -> bytes:
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events).encode("utf-8")


SCENARIO_A = backend_sse(
    ("user_message", {"content": "hello"}),
    ("chunk", {"content": "Hi"}),
    ("chunk", {"content": " there"}),
    ("done", {}),
)


class FakeBackend:
    """Records requests and answers with a canned response."""

    def __init__(
        self,
        body: Any = b"",
        *,
        status_code: int = 200,
        content_type: str = "text/event-stream",
        error: Exception | None = None,
    ) -> None:
        self.body = body
        self.status_code = status_code
        self.content_type = content_type
        self.error = error
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, content=self.body, headers={"content-type": self.content_type})

    def factory(self, token: str) -> BackendClient:
        return BackendClient(BACKEND_URL, token, transport=httpx.MockTransport(self.handler))


def create_test_client(backend: FakeBackend) -> TestClient:
    settings = Settings(environment="test", backend_api_url=BACKEND_URL)
    app = create_app(settings=settings, dependencies=AppDependencies(backend_factory=backend.factory))
    return TestClient(app)


def wire_frames(text: str) -> list[Any]:
    parser = SSEFrameParser()
    frames = parser.feed(text.encode("utf-8")) + parser.close()
    return [frame.data for frame in frames]


def test_forwards_message_and_reframes_stream() -> None:
    backend = FakeBackend(SCENARIO_A)
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"}, headers=AUTH)

    assert response.status_code == 200, response.text
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["x-session-id"] == "s1"
    assert response.headers["cache-control"] == "no-cache"

    [request] = backend.requests
    assert request.method == "POST"
    assert str(request.url) == f"{BACKEND_URL}/chat/sessions/s1/messages"
    assert json.loads(request.content) == {"message": "hello"}
    assert request.headers["authorization"] == "Bearer tok"

    assert response.text.startswith(": session_id: s1\n")
    assert wire_frames(response.text) == [
        {"type": "text-delta", "textDelta": "Hi"},
        {"type": "text-delta", "textDelta": " there"},
        {"type": "finish", "finishReason": "stop"},
    ]


def test_latest_user_message_and_header_session() -> None:
    backend = FakeBackend(SCENARIO_A)
    client = create_test_client(backend)

    body = {
        "messages": [
            {"role": "user", "content": "old"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "parts": [{"type": "text", "text": "newest"}]},
        ]
    }
    response = client.post("/api/chat", json=body, headers={**AUTH, "X-Session-Id": "s9"})

    assert response.status_code == 200
    assert json.loads(backend.requests[0].content) == {"message": "newest"}
    assert backend.requests[0].url.path == "/api/v1/chat/sessions/s9/messages"


def test_missing_authorization_is_rejected_before_backend_call() -> None:
    backend = FakeBackend(SCENARIO_A)
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"})

    assert response.status_code == 401
    assert response.json()["error"] == "Unauthorized"
    assert backend.requests == []


def test_missing_message_is_rejected_first() -> None:
    backend = FakeBackend(SCENARIO_A)
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"threadId": "s1"})

    assert response.status_code == 400
    payload = response.json()
    assert payload["error"] == "No user message found"
    assert "expected" in payload
    assert backend.requests == []


def test_missing_session_is_rejected() -> None:
    backend = FakeBackend(SCENARIO_A)
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello"}, headers=AUTH)

    assert response.status_code == 400
    assert response.json()["error"] == "Missing session id"
    assert backend.requests == []


def test_backend_error_is_passed_through() -> None:
    backend = FakeBackend(b'{"detail": "exploded"}', status_code=500, content_type="application/json")
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"}, headers=AUTH)

    assert response.status_code == 500
    assert response.json() == {"detail": "exploded"}


def test_unreachable_backend_is_bad_gateway() -> None:
    backend = FakeBackend(error=httpx.ConnectError("connection refused"))
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"}, headers=AUTH)

    assert response.status_code == 502
    assert response.json()["error"] == "Backend unavailable"


def test_stream_without_terminal_event_just_ends() -> None:
    backend = FakeBackend(backend_sse(("chunk", {"content": "Partial"})))
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"}, headers=AUTH)

    assert response.status_code == 200
    assert wire_frames(response.text) == [{"type": "text-delta", "textDelta": "Partial"}]


def test_interrupted_backend_stream_ends_without_synthetic_finish() -> None:
    async def broken_stream():
        yield backend_sse(("chunk", {"content": "Partial"}))
        raise httpx.ReadError("connection reset")

    backend = FakeBackend(broken_stream())
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"}, headers=AUTH)

    assert response.status_code == 200
    assert wire_frames(response.text) == [{"type": "text-delta", "textDelta": "Partial"}]


def test_malformed_backend_frame_is_skipped() -> None:
    body = SCENARIO_A.replace(b'event: chunk\ndata: {"content": " there"}', b"event: chunk\ndata: {broken")
    backend = FakeBackend(body)
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"}, headers=AUTH)

    assert wire_frames(response.text) == [
        {"type": "text-delta", "textDelta": "Hi"},
        {"type": "finish", "finishReason": "stop"},
    ]


def test_backend_error_event_becomes_error_finish() -> None:
    backend = FakeBackend(backend_sse(("chunk", {"content": "Hi"}), ("error", {"error": "Model overloaded"})))
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"}, headers=AUTH)

    assert wire_frames(response.text)[-1] == {
        "type": "finish",
        "finishReason": "error",
        "error": "Model overloaded",
    }


def test_rag_search_and_sources_are_relayed() -> None:
    backend = FakeBackend(
        backend_sse(
            ("rag_search", {"status": "searching", "query": "photosynthesis"}),
            ("chunk", {"content": "Plants"}),
            ("done", {"sources": [{"document_id": "d1", "filename": "bio.pdf", "page": 2, "score": 0.9}]}),
        )
    )
    client = create_test_client(backend)

    response = client.post("/api/chat", json={"message": "hello", "threadId": "s1"}, headers=AUTH)

    frames = wire_frames(response.text)
    assert frames[0] == {"type": "rag-search", "status": "searching", "query": "photosynthesis"}
    assert frames[-1]["sources"] == [
        {
            "document_id": "d1",
            "document_name": "bio.pdf",
            "page_number": 2,
            "similarity_score": 0.9,
            "chunk_index": None,
        }
    ]


def test_session_detail_passthrough() -> None:
    backend = FakeBackend(
        json.dumps({"id": "s1", "title": "Cells", "messages": []}).encode(),
        content_type="application/json",
    )
    client = create_test_client(backend)

    assert client.get("/api/sessions/s1").status_code == 401

    response = client.get("/api/sessions/s1", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["title"] == "Cells"
    assert backend.requests[0].url.path == "/api/v1/chat/sessions/s1"


def test_health_and_metrics_endpoints() -> None:
    client = create_test_client(FakeBackend())

    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert client.head("/healthz").status_code == 200
    assert client.get("/livez").json() == {"status": "alive"}
    assert "X-Correlation-ID" in health.headers

    client.post("/api/chat", json={"message": "hello"})
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "tutorchat_proxy_requests_total" in metrics.text

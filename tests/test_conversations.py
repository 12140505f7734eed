"""Tests for lazy conversation creation and thread selection."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from tutorchat.client import ChatController, SendOutcome, ThreadPhase, build_controller, derive_title
from tutorchat.config import Settings
from tutorchat.sse import format_comment, format_sse

BACKEND_URL = "http://backend.test/api/v1"
PROXY_URL = "http://proxy.test"

SESSION = {
    "id": "s42",
    "title": "Explain photosynthesis",
    "model_id": "gpt-test",
    "status": "ACTIVE",
    "total_messages": 0,
    "started_at": "2024-05-01T10:00:00Z",
}


class FakeServices:
    """Backend and proxy doubles sharing one ordered call log."""

    def __init__(
        self,
        *,
        create_status: int = 201,
        create_body: dict[str, Any] | None = None,
        detail: dict[str, Any] | None = None,
        detail_status: int = 200,
    ):
        self.calls: list[str] = []
        self.create_status = create_status
        self.create_body = create_body or SESSION
        self.detail = detail or {**SESSION, "messages": []}
        self.detail_status = detail_status
        self.created: list[dict[str, Any]] = []
        self.sent: list[dict[str, Any]] = []
        self.stall = False

    def backend(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/api/v1/chat/sessions":
            self.calls.append("create")
            self.created.append(json.loads(request.content))
            if self.create_status >= 400:
                return httpx.Response(self.create_status, json={"detail": "quota exceeded"})
            return httpx.Response(self.create_status, json=self.create_body)
        if request.method == "GET" and path == "/api/v1/chat/sessions":
            self.calls.append("list")
            return httpx.Response(200, json={"sessions": [SESSION], "total": 1})
        if request.method == "GET":
            self.calls.append("detail")
            return httpx.Response(self.detail_status, json=self.detail)
        if request.method == "PATCH":
            self.calls.append("rename")
            return httpx.Response(200, json={**SESSION, **json.loads(request.content)})
        if request.method == "DELETE":
            self.calls.append("delete")
            return httpx.Response(204)
        return httpx.Response(405)

    def proxy(self, request: httpx.Request) -> httpx.Response:
        self.calls.append("send")
        body = json.loads(request.content)
        self.sent.append(body)
        head = format_comment("session_id", body["threadId"]) + format_sse(
            {"type": "text-delta", "textDelta": "Plants use light."}
        )
        headers = {"content-type": "text/event-stream"}
        if self.stall:

            async def stalled():
                yield head.encode("utf-8")
                await asyncio.sleep(10)

            return httpx.Response(200, content=stalled(), headers=headers)
        stream = head + format_sse({"type": "finish", "finishReason": "stop"})
        return httpx.Response(200, text=stream, headers=headers)


def make_controller(services: FakeServices, navigated: list[str | None] | None = None) -> ChatController:
    settings = Settings(
        environment="test",
        backend_api_url=BACKEND_URL,
        proxy_url=PROXY_URL,
        default_model_id="gpt-test",
        state_file=None,
    )
    return build_controller(
        settings,
        token="tok",
        navigate=navigated.append if navigated is not None else None,
        proxy_transport=httpx.MockTransport(services.proxy),
        backend_transport=httpx.MockTransport(services.backend),
    )


def test_derive_title():
    assert derive_title("  What   is\nphotosynthesis? ") == "What is photosynthesis?"
    assert derive_title("a" * 60) == "a" * 50 + "..."
    assert derive_title("abcdef", max_length=3, ellipsis="…") == "abc…"
    assert derive_title("   ") == "New Chat"


def test_first_send_creates_conversation_before_sending():
    services = FakeServices()
    navigated: list[str | None] = []
    controller = make_controller(services, navigated)

    async def scenario() -> SendOutcome:
        outcome = await controller.send("Explain photosynthesis")
        await controller.conversations.wait_for_refresh()
        return outcome

    assert asyncio.run(scenario()) is SendOutcome.COMPLETED
    assert services.calls.count("create") == 1
    assert services.calls.count("send") == 1
    assert services.calls.index("create") < services.calls.index("send")
    assert services.created == [{"model_id": "gpt-test", "title": "Explain photosynthesis"}]
    assert services.sent[0]["threadId"] == "s42"
    assert navigated == ["s42"]
    assert controller.thread_id == "s42"
    assert controller.conversations.phase is ThreadPhase.ASSIGNED
    assert [s.id for s in controller.conversations.conversations] == ["s42"]
    assert controller.conversations.total == 1
    assert controller.state.messages[-1].content == "Plants use light."


def test_rapid_sends_create_and_send_once():
    services = FakeServices()
    controller = make_controller(services)

    async def scenario() -> list[SendOutcome]:
        outcomes = await asyncio.gather(controller.send("first"), controller.send("second"))
        await controller.conversations.wait_for_refresh()
        return list(outcomes)

    assert asyncio.run(scenario()) == [SendOutcome.COMPLETED, SendOutcome.REJECTED]
    assert services.calls.count("create") == 1
    assert services.calls.count("send") == 1


def test_failed_creation_sends_nothing():
    services = FakeServices(create_status=500)
    navigated: list[str | None] = []
    controller = make_controller(services, navigated)

    assert asyncio.run(controller.send("Explain photosynthesis")) is SendOutcome.FAILED
    assert "send" not in services.calls
    assert navigated == []
    assert controller.thread_id is None
    assert controller.conversations.phase is ThreadPhase.NONE
    bubble = controller.state.messages[-1]
    assert bubble.role == "assistant"
    assert bubble.error
    assert bubble.content.startswith("Failed to create conversation")
    assert not controller.consumer.is_sending


def test_creation_reply_without_id_fails_the_send_and_allows_a_retry():
    services = FakeServices(create_body={"title": "x"})
    controller = make_controller(services)

    async def scenario() -> tuple[SendOutcome, ThreadPhase, SendOutcome]:
        first = await controller.send("Explain photosynthesis")
        phase = controller.conversations.phase
        services.create_body = SESSION
        second = await controller.send("Explain photosynthesis")
        await controller.conversations.wait_for_refresh()
        return first, phase, second

    first, phase, second = asyncio.run(scenario())

    assert first is SendOutcome.FAILED
    assert phase is ThreadPhase.NONE
    failed = [m for m in controller.state.messages if m.error]
    assert failed and failed[0].content.startswith("Failed to create conversation")
    assert second is SendOutcome.COMPLETED
    assert services.calls.count("create") == 2
    assert services.calls.count("send") == 1
    assert controller.thread_id == "s42"


def test_existing_thread_skips_creation():
    services = FakeServices()
    controller = make_controller(services)
    controller.consumer.context.set_session_id("s7")

    assert asyncio.run(controller.send("hello")) is SendOutcome.COMPLETED
    assert "create" not in services.calls
    assert services.sent[0]["threadId"] == "s7"


def test_blank_message_is_rejected():
    services = FakeServices()
    controller = make_controller(services)

    assert asyncio.run(controller.send("   ")) is SendOutcome.REJECTED
    assert services.calls == []


def test_selecting_a_thread_loads_real_history():
    detail = {
        **SESSION,
        "messages": [{"role": "user", "content": "ignored simplified view"}],
        "real_messages": [
            {"role": "user", "content": "What is a cell?"},
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"id": "c1", "function": {"name": "rag_search", "arguments": '{"query": "cell"}'}},
                ],
            },
            {"role": "tool", "tool_call_id": "c1", "content": "2 passages"},
            {
                "role": "assistant",
                "content": [{"type": "text", "text": "The basic unit of life."}],
                "sources": [{"document_id": "d1", "filename": "bio.pdf", "page": 4, "score": 0.8}],
            },
        ],
    }
    services = FakeServices(detail=detail)
    controller = make_controller(services)

    asyncio.run(controller.navigate_to("s42"))

    messages = controller.state.messages
    assert [m.role for m in messages] == ["user", "assistant", "assistant"]
    call = messages[1].tool_calls[0]
    assert (call.id, call.name, dict(call.arguments), call.result) == ("c1", "rag_search", {"query": "cell"}, "2 passages")
    assert messages[2].content == "The basic unit of life."
    assert messages[2].rag_searched
    assert messages[2].sources[0].document_name == "bio.pdf"
    assert controller.thread_id == "s42"


def test_unknown_thread_loads_empty_transcript():
    services = FakeServices(detail={"detail": "not found"}, detail_status=404)
    controller = make_controller(services)

    asyncio.run(controller.navigate_to("missing"))

    assert controller.state.messages == []
    assert controller.state.load_error is None
    assert controller.thread_id == "missing"


def test_history_failure_is_reported():
    services = FakeServices(detail={"detail": "database down"}, detail_status=500)
    controller = make_controller(services)

    asyncio.run(controller.navigate_to("s42"))

    assert controller.state.messages == []
    assert "500" in (controller.state.load_error or "")


def test_selecting_no_thread_starts_fresh():
    services = FakeServices()
    controller = make_controller(services)
    controller.consumer.context.set_session_id("s42")

    asyncio.run(controller.navigate_to(None))

    assert controller.thread_id is None
    assert controller.conversations.phase is ThreadPhase.NONE
    assert services.calls == []


def test_rename_and_delete_active_thread():
    services = FakeServices()
    navigated: list[str | None] = []
    controller = make_controller(services, navigated)
    controller.consumer.context.set_session_id("s42")

    async def scenario():
        renamed = await controller.conversations.rename("s42", "Plant biology")
        await controller.conversations.delete("s42")
        return renamed

    renamed = asyncio.run(scenario())

    assert renamed.title == "Plant biology"
    assert controller.conversations.get("s42") is None
    assert controller.thread_id is None
    assert navigated == [None]


def test_navigating_away_stops_the_reply_in_flight():
    services = FakeServices()
    services.stall = True
    controller = make_controller(services)
    controller.consumer.context.set_session_id("s1")

    async def scenario() -> tuple[bool, bool, SendOutcome, SendOutcome]:
        sending = asyncio.create_task(controller.send("hello"))
        await asyncio.sleep(0.05)
        during = controller.consumer.is_sending
        await controller.navigate_to("s42")
        after = controller.consumer.is_sending
        outcome = await sending
        services.stall = False
        follow_up = await controller.send("next question")
        return during, after, outcome, follow_up

    during, after, outcome, follow_up = asyncio.run(scenario())

    assert during
    assert not after
    assert outcome is SendOutcome.ABORTED
    assert follow_up is SendOutcome.COMPLETED
    assert [body["threadId"] for body in services.sent] == ["s1", "s42"]
    assert [m.content for m in controller.state.messages] == ["next question", "Plants use light."]


def test_stop_without_a_send_is_a_no_op():
    controller = make_controller(FakeServices())

    assert not controller.abort()
    asyncio.run(controller.stop())
    assert not controller.consumer.is_sending

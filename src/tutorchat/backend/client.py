"""HTTPX client for the tutoring backend's chat session API."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, Sequence

import httpx

from tutorchat.metrics.observability import StreamMetrics, get_logger
from tutorchat.models import ConversationDetail, ConversationSession, Message, ToolCall
from tutorchat.sse.normalizer import normalize_sources

_ROLES = {"user", "assistant", "system", "tool"}


class BackendError(RuntimeError):
    """Raised when the backend answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str, content_type: str | None = None) -> None:
        super().__init__(f"Backend request failed ({status_code}): {body[:200]}")
        self.status_code = status_code
        self.body = body
        self.content_type = content_type


class SessionNotFound(BackendError):
    """Raised when a conversation id is unknown to the backend."""


def build_timeout(connect: float = 10.0, write: float = 30.0, pool: float = 30.0) -> httpx.Timeout:
    # Generation can take minutes, so reads are unbounded
    return httpx.Timeout(connect=connect, read=None, write=write, pool=pool)


def _raise_for_status(response: httpx.Response, body: str) -> None:
    if response.is_success:
        return
    StreamMetrics.observe_backend_error(response.status_code)
    content_type = response.headers.get("content-type")
    if response.status_code == 404:
        raise SessionNotFound(response.status_code, body, content_type)
    raise BackendError(response.status_code, body, content_type)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(part.get("text", "")) for part in content if isinstance(part, Mapping) and part.get("type") == "text"
        )
    return ""


def _tool_calls(raw: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, Mapping):
            continue
        function = item.get("function") if isinstance(item.get("function"), Mapping) else item
        arguments = function.get("arguments")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except ValueError:
                arguments = {"raw": arguments}
        calls.append(
            ToolCall(
                id=str(item.get("id") or ""),
                name=str(function.get("name") or ""),
                arguments=arguments if isinstance(arguments, Mapping) else {},
            )
        )
    return calls


def parse_history(payload: Mapping[str, Any]) -> list[Message]:
    """Rebuild a transcript from a session detail payload.

    ``real_messages`` keeps tool-call/tool-result pairs; when present, tool
    results are folded into the assistant message that requested them.
    Otherwise the simplified ``messages`` list is used as-is.
    """

    real = payload.get("real_messages")
    raw_messages: Sequence[Any] = real if isinstance(real, list) and real else payload.get("messages") or []
    messages: list[Message] = []
    pending: dict[str, tuple[Message, int]] = {}
    for raw in raw_messages:
        if not isinstance(raw, Mapping):
            continue
        role = raw.get("role") if raw.get("role") in _ROLES else "user"
        if role == "tool" and raw.get("tool_call_id") in pending:
            owner, index = pending.pop(raw["tool_call_id"])
            call = owner.tool_calls[index]
            owner.tool_calls[index] = ToolCall(call.id, call.name, call.arguments, result=raw.get("content"))
            continue
        sources = list(normalize_sources(raw.get("sources")))
        message = Message(
            role=role,
            content=_content_text(raw.get("content")),
            created_at=raw.get("created_at"),
            sources=sources,
            rag_searched=bool(raw.get("ragSearched") or sources),
            tool_calls=_tool_calls(raw.get("tool_calls")),
        )
        for index, call in enumerate(message.tool_calls):
            if call.id:
                pending[call.id] = (message, index)
        messages.append(message)
    return messages


class BackendClient:
    """Async client bound to one bearer credential."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            timeout=timeout or build_timeout(),
            transport=transport,
        )
        self._logger = get_logger("backend")

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, path, **kwargs)
        _raise_for_status(response, response.text)
        return response

    async def create_session(self, model_id: str, title: str, prompt_id: str | None = None) -> ConversationSession:
        body: dict[str, Any] = {"model_id": model_id, "title": title}
        if prompt_id:
            body["prompt_id"] = prompt_id
        response = await self._request("POST", "/chat/sessions", json=body)
        session = ConversationSession.from_payload(response.json())
        self._logger.info("backend.session.created", session_id=session.id, model_id=model_id)
        return session

    async def list_sessions(
        self,
        status_filter: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ConversationSession], int]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status_filter:
            params["status_filter"] = status_filter
        response = await self._request("GET", "/chat/sessions", params=params)
        data = response.json()
        sessions = [ConversationSession.from_payload(item) for item in data.get("sessions") or []]
        return sessions, int(data.get("total") or 0)

    async def get_session_payload(self, session_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/chat/sessions/{session_id}")
        return response.json()

    async def get_session(self, session_id: str) -> ConversationDetail:
        payload = await self.get_session_payload(session_id)
        return ConversationDetail(session=ConversationSession.from_payload(payload), messages=parse_history(payload))

    async def update_session(
        self,
        session_id: str,
        *,
        title: str | None = None,
        status: str | None = None,
    ) -> ConversationSession:
        updates = {key: value for key, value in {"title": title, "status": status}.items() if value is not None}
        response = await self._request("PATCH", f"/chat/sessions/{session_id}", json=updates)
        return ConversationSession.from_payload(response.json())

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/chat/sessions/{session_id}")

    @asynccontextmanager
    async def stream_message(self, session_id: str, message: str) -> AsyncIterator[httpx.Response]:
        """Open the per-session message stream; the response is closed on exit."""

        request = self._client.build_request(
            "POST",
            f"/chat/sessions/{session_id}/messages",
            json={"message": message},
            headers={"Accept": "text/event-stream"},
        )
        response = await self._client.send(request, stream=True)
        try:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                _raise_for_status(response, body)
            yield response
        finally:
            await response.aclose()


__all__ = ["BackendClient", "BackendError", "SessionNotFound", "build_timeout", "parse_history"]

"""HTTPX transport that reads the proxy's event stream."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Sequence

import httpx

from tutorchat.client.context import RequestContext
from tutorchat.metrics.observability import get_logger
from tutorchat.models import Message
from tutorchat.sse import SSEFrameParser, StreamEvent, normalize_frame

_EOF = object()
_ABORTED = object()


class ProxyError(RuntimeError):
    """Raised when the proxy answers a send with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body[:500]}")
        self.status_code = status_code
        self.body = body


class MissingCredentials(RuntimeError):
    """Raised when no bearer credential is available for a request."""


class StreamStalled(RuntimeError):
    """Raised when no bytes arrive within the configured idle timeout."""


async def _read(chunks: AsyncIterator[bytes]) -> Any:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return _EOF


async def _next_chunk(
    chunks: AsyncIterator[bytes],
    abort: asyncio.Event | None,
    idle_timeout: float | None,
) -> Any:
    """Wait for the next chunk, an abort, or the idle timeout, whichever comes first."""

    read_task = asyncio.ensure_future(_read(chunks))
    waiters: set[asyncio.Future] = {read_task}
    abort_task = None
    if abort is not None:
        abort_task = asyncio.ensure_future(abort.wait())
        waiters.add(abort_task)
    try:
        done, _ = await asyncio.wait(waiters, timeout=idle_timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [task for task in waiters if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    if read_task in done:
        return read_task.result()
    if abort_task is not None and abort_task in done:
        return _ABORTED
    raise StreamStalled(f"No data received for {idle_timeout} seconds")


def _history_payload(history: Sequence[Message]) -> list[dict[str, str]]:
    return [
        {"role": message.role, "content": message.content}
        for message in history
        if message.role in ("user", "assistant") and not message.error and message.content
    ]


class ChatTransport:
    """Posts a user message to the proxy and yields normalised stream events."""

    def __init__(
        self,
        proxy_url: str,
        *,
        route: str = "/api/chat",
        transport: httpx.AsyncBaseTransport | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self._route = "/" + route.lstrip("/")
        self._client = httpx.AsyncClient(
            base_url=proxy_url.rstrip("/"),
            transport=transport,
            timeout=httpx.Timeout(connect=connect_timeout, read=None, write=30.0, pool=30.0),
        )
        self._logger = get_logger("transport")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stream(
        self,
        ctx: RequestContext,
        message: str,
        *,
        history: Sequence[Message] = (),
        abort: asyncio.Event | None = None,
        idle_timeout: float | None = None,
        on_session: Callable[[str], None] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield events for one send, stopping after the first terminal event.

        The session id is learned from the ``X-Session-Id`` response header or,
        failing that, from the leading ``: session_id:`` comment. An abort ends
        the iterator quietly; the response is always closed on the way out.
        """

        if not ctx.token:
            raise MissingCredentials("No authentication token found")
        headers = {"Authorization": f"Bearer {ctx.token}", "Accept": "text/event-stream"}
        if ctx.session_id:
            headers["X-Session-Id"] = ctx.session_id
        body = {
            "messages": [*_history_payload(history), {"role": "user", "content": message}],
            "threadId": ctx.session_id,
            "sessionId": ctx.session_id,
        }
        request = self._client.build_request("POST", self._route, json=body, headers=headers)
        response = await self._client.send(request, stream=True)
        try:
            if not response.is_success:
                text = (await response.aread()).decode("utf-8", errors="replace")
                raise ProxyError(response.status_code, text)

            session_id = response.headers.get("X-Session-Id")
            if session_id and on_session is not None:
                on_session(session_id)

            parser = SSEFrameParser()
            chunks = response.aiter_bytes()
            while True:
                if abort is not None and abort.is_set():
                    self._logger.info("transport.stream.aborted", session_id=session_id)
                    return
                chunk = await _next_chunk(chunks, abort, idle_timeout)
                if chunk is _ABORTED:
                    self._logger.info("transport.stream.aborted", session_id=session_id)
                    return
                frames = parser.close() if chunk is _EOF else parser.feed(chunk)
                if session_id is None and parser.session_id:
                    session_id = parser.session_id
                    if on_session is not None:
                        on_session(session_id)
                for frame in frames:
                    event = normalize_frame(frame)
                    if event is None:
                        continue
                    yield event
                    if event.terminal:
                        return
                if chunk is _EOF:
                    self._logger.warning("transport.stream.truncated", session_id=session_id)
                    return
        finally:
            await response.aclose()


__all__ = ["ChatTransport", "MissingCredentials", "ProxyError", "StreamStalled"]

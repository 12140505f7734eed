"""Relay a backend SSE stream to the browser in the proxy wire format."""

from __future__ import annotations

import time
from contextlib import AsyncExitStack
from typing import AsyncIterator

import httpx

from tutorchat.backend.client import BackendClient
from tutorchat.metrics.observability import StreamMetrics, get_logger
from tutorchat.sse import SESSION_ID_KEY, aiter_frames, format_comment, format_sse, normalize_events

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_logger = get_logger("proxy")


async def open_relay(backend: BackendClient, session_id: str, message: str) -> AsyncIterator[str]:
    """Open the backend stream and return the re-framed body iterator.

    Backend failures (non-2xx, unreachable host) are raised here, before any
    byte is sent to the caller. The returned iterator owns the backend client
    and the upstream response and releases both when it finishes.
    """

    stack = AsyncExitStack()
    stack.push_async_callback(backend.aclose)
    try:
        response = await stack.enter_async_context(backend.stream_message(session_id, message))
    except BaseException:
        await stack.aclose()
        raise
    return _relay(stack, response, session_id)


async def _relay(stack: AsyncExitStack, response: httpx.Response, session_id: str) -> AsyncIterator[str]:
    start = time.perf_counter()
    relayed = 0
    terminal = False
    try:
        yield format_comment(SESSION_ID_KEY, session_id)
        async for event in normalize_events(aiter_frames(response.aiter_bytes())):
            StreamMetrics.observe_event(event.kind)
            relayed += 1
            terminal = event.terminal
            yield format_sse(event.to_wire())
    except httpx.HTTPError as exc:
        # No synthetic terminal frame: the client sees a stream that just ends
        _logger.warning("proxy.stream.interrupted", session_id=session_id, error=str(exc))
    finally:
        await stack.aclose()
        StreamMetrics.observe_stream(time.perf_counter() - start)
        _logger.info(
            "proxy.stream.closed",
            session_id=session_id,
            events=relayed,
            terminal=terminal,
        )


__all__ = ["STREAM_HEADERS", "open_relay"]

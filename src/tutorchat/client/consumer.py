"""Drives one send at a time from the proxy stream into :class:`ChatState`."""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from enum import Enum

import httpx

from tutorchat.client.context import ClientContext
from tutorchat.client.state import ChatState, LoadingStage, NullRenderer, Renderer, apply_event, utc_now
from tutorchat.client.transport import ChatTransport, MissingCredentials, ProxyError, StreamStalled
from tutorchat.metrics.observability import StreamMetrics, get_logger
from tutorchat.models import Message
from tutorchat.sse import StreamError


class SendOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"
    REJECTED = "rejected"
    TRUNCATED = "truncated"


class StreamConsumer:
    """Reduces the proxy stream into chat state under an at-most-one-send guard.

    Every event is rendered and flushed before the next chunk is requested, so
    the visible text grows at the pace the network delivers it.
    """

    def __init__(
        self,
        transport: ChatTransport,
        context: ClientContext,
        renderer: Renderer | None = None,
        *,
        state: ChatState | None = None,
        idle_timeout: float | None = None,
    ) -> None:
        self._transport = transport
        self._context = context
        self.renderer: Renderer = renderer or NullRenderer()
        self._idle_timeout = idle_timeout
        self.state = state or ChatState()
        self._logger = get_logger("consumer")

    @property
    def context(self) -> ClientContext:
        return self._context

    @property
    def is_sending(self) -> bool:
        return self.state.is_sending

    def acquire(self) -> bool:
        """Claim the send slot; ``False`` when another send or creation step holds it."""

        if self.state.is_sending:
            return False
        self.state.is_sending = True
        self.paint()
        return True

    def release(self) -> None:
        self.state.is_sending = False
        self.paint()

    def paint(self) -> None:
        self.renderer.render(self.state)
        self.renderer.flush()

    async def aclose(self) -> None:
        await self._transport.aclose()

    def append_error(self, text: str) -> None:
        self.state.append_error(text)
        self.state.stage = LoadingStage.IDLE
        self.paint()

    async def send(self, text: str, *, abort: asyncio.Event | None = None) -> SendOutcome:
        if not self.acquire():
            self._logger.info("consumer.send.rejected", reason="send_in_flight")
            return SendOutcome.REJECTED
        try:
            return await self.stream_reply(text, abort=abort)
        finally:
            self.release()

    async def stream_reply(self, text: str, *, abort: asyncio.Event | None = None) -> SendOutcome:
        """Append the user turn and stream the assistant reply. The caller holds the guard."""

        ctx = self._context.snapshot()
        state = self.state
        history = list(state.messages)
        state.reset_for_send()
        state.messages.append(Message(role="user", content=text, created_at=utc_now()))
        state.open_assistant()
        self.paint()

        start = time.perf_counter()
        outcome = SendOutcome.TRUNCATED
        try:
            events = self._transport.stream(
                ctx,
                text,
                history=history,
                abort=abort,
                idle_timeout=self._idle_timeout,
                on_session=self._context.set_session_id,
            )
            async with aclosing(events) as stream:
                async for event in stream:
                    StreamMetrics.observe_event(event.kind)
                    apply_event(state, event)
                    self.paint()
                    if event.terminal:
                        outcome = SendOutcome.FAILED if isinstance(event, StreamError) else SendOutcome.COMPLETED
            if outcome is SendOutcome.TRUNCATED and abort is not None and abort.is_set():
                outcome = SendOutcome.ABORTED
        except ProxyError as exc:
            if exc.status_code == 401:
                self._context.clear_credentials()
            self._logger.warning("consumer.send.failed", status_code=exc.status_code)
            state.fail_open(str(exc))
            outcome = SendOutcome.FAILED
        except (MissingCredentials, StreamStalled, httpx.HTTPError) as exc:
            self._logger.warning("consumer.send.failed", error=str(exc))
            state.fail_open(str(exc) or "Failed to send message")
            outcome = SendOutcome.FAILED
        finally:
            StreamMetrics.observe_stream(time.perf_counter() - start)

        state.close_stream()
        if outcome is SendOutcome.TRUNCATED:
            # Known gap: no terminal event, so the stage stays where the stream left it
            self._logger.warning("consumer.stream.truncated", stage=state.stage.value)
        else:
            state.stage = LoadingStage.IDLE
        self.paint()
        self._logger.info("consumer.send.finished", outcome=outcome.value)
        return outcome


__all__ = ["SendOutcome", "StreamConsumer"]

"""High-level chat controller used by the UI and the CLI."""

from __future__ import annotations

import asyncio

import httpx

from tutorchat.backend.client import BackendClient, BackendError
from tutorchat.client.context import ClientContext
from tutorchat.client.consumer import SendOutcome, StreamConsumer
from tutorchat.client.conversations import ConversationBusy, ConversationController, ConversationCreateError, Navigate
from tutorchat.client.state import ChatState, Renderer
from tutorchat.client.storage import JsonFileStorage, MemoryStorage
from tutorchat.client.transport import ChatTransport, MissingCredentials
from tutorchat.config import Settings, get_settings
from tutorchat.metrics.observability import get_logger


class ChatController:
    """Sends messages, creating the backend conversation first when needed."""

    def __init__(
        self,
        conversations: ConversationController,
        consumer: StreamConsumer,
        *,
        model_id: str,
        prompt_id: str | None = None,
    ) -> None:
        self.conversations = conversations
        self.consumer = consumer
        self.model_id = model_id
        self.prompt_id = prompt_id
        self._abort: asyncio.Event | None = None
        self._settled: asyncio.Event | None = None
        self._logger = get_logger("chat")

    @property
    def state(self) -> ChatState:
        return self.consumer.state

    @property
    def thread_id(self) -> str | None:
        return self.conversations.active_id

    async def send(self, text: str, *, abort: asyncio.Event | None = None) -> SendOutcome:
        if not text.strip():
            return SendOutcome.REJECTED
        # The guard also covers conversation creation
        if not self.consumer.acquire():
            self._logger.info("chat.send.rejected", reason="send_in_flight")
            return SendOutcome.REJECTED
        if abort is None:
            abort = asyncio.Event()
        settled = asyncio.Event()
        self._abort, self._settled = abort, settled
        try:
            try:
                await self.conversations.ensure_conversation(
                    text,
                    model_id=self.model_id,
                    prompt_id=self.prompt_id,
                )
            except (ConversationCreateError, ConversationBusy) as exc:
                self.consumer.append_error(str(exc))
                return SendOutcome.FAILED
            if abort.is_set():
                return SendOutcome.ABORTED
            return await self.consumer.stream_reply(text, abort=abort)
        finally:
            self._abort = None
            self.consumer.release()
            settled.set()

    def abort(self) -> bool:
        """Signal the reply in flight to stop; ``False`` when nothing is sending."""

        if self._abort is None:
            return False
        self._abort.set()
        return True

    async def stop(self) -> None:
        """Abort the reply in flight and wait until its send has released the guard."""

        settled = self._settled
        if self.abort() and settled is not None:
            await settled.wait()

    async def aclose(self) -> None:
        await self.consumer.aclose()

    async def navigate_to(self, thread_id: str | None) -> None:
        """Replace the transcript with the persisted history of ``thread_id``."""

        await self.stop()
        try:
            messages = await self.conversations.select(thread_id)
        except (BackendError, MissingCredentials, httpx.HTTPError) as exc:
            self._logger.warning("chat.history.failed", session_id=thread_id, error=str(exc))
            self.state.replace_transcript([])
            self.state.load_error = str(exc)
        else:
            self.state.replace_transcript(messages)
        self.consumer.paint()


def build_controller(
    settings: Settings | None = None,
    *,
    renderer: Renderer | None = None,
    navigate: Navigate | None = None,
    token: str | None = None,
    proxy_transport: httpx.AsyncBaseTransport | None = None,
    backend_transport: httpx.AsyncBaseTransport | None = None,
) -> ChatController:
    """Wire a controller from settings; transports are injectable for tests."""

    settings = settings or get_settings()
    storage = JsonFileStorage(settings.state_file) if settings.state_file else MemoryStorage()
    context = ClientContext(storage)
    if token:
        context.set_token(token)

    def backend_factory(bearer: str) -> BackendClient:
        return BackendClient(settings.backend_base, bearer, transport=backend_transport)

    transport = ChatTransport(
        settings.proxy_url,
        route=settings.chat_route,
        transport=proxy_transport,
        connect_timeout=settings.backend_connect_timeout_seconds,
    )
    consumer = StreamConsumer(
        transport,
        context,
        renderer,
        idle_timeout=settings.stream_idle_timeout_seconds,
    )
    conversations = ConversationController(backend_factory, context, settings=settings, navigate=navigate)
    return ChatController(
        conversations,
        consumer,
        model_id=settings.default_model_id,
        prompt_id=settings.default_prompt_id,
    )

"""Conversation lifecycle: lazy creation, selection, and the cached session list."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable

import httpx

from tutorchat.backend.client import BackendClient, BackendError, SessionNotFound
from tutorchat.client.context import ClientContext
from tutorchat.client.transport import MissingCredentials
from tutorchat.config import Settings, get_settings
from tutorchat.metrics.observability import StreamMetrics, TimedSection, get_logger
from tutorchat.models import ConversationSession, Message

BackendFactory = Callable[[str], BackendClient]
Navigate = Callable[["str | None"], None]


class ConversationCreateError(RuntimeError):
    """Raised when a conversation could not be created before the first send."""


class ConversationBusy(RuntimeError):
    """Raised when a creation is requested while another one is in progress."""


class ThreadPhase(str, Enum):
    NONE = "none"
    CREATING = "creating"
    ASSIGNED = "assigned"


def derive_title(text: str, max_length: int = 50, ellipsis: str = "...") -> str:
    """Human-readable title from the first user message."""

    cleaned = " ".join(text.split())
    if not cleaned:
        return "New Chat"
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[:max_length].rstrip() + ellipsis


class ConversationController:
    """Owns the active thread identifier and a read-through cache of sessions."""

    def __init__(
        self,
        backend_factory: BackendFactory,
        context: ClientContext,
        *,
        settings: Settings | None = None,
        navigate: Navigate | None = None,
    ) -> None:
        self._backend_factory = backend_factory
        self._context = context
        self._settings = settings or get_settings()
        self._navigate = navigate
        self._sessions: dict[str, ConversationSession] = {}
        self._order: list[str] = []
        self._refresh_task: asyncio.Task | None = None
        self._logger = get_logger("conversations")
        self.total = 0
        self.phase = ThreadPhase.ASSIGNED if context.session_id else ThreadPhase.NONE

    @property
    def active_id(self) -> str | None:
        return self._context.session_id

    @property
    def conversations(self) -> list[ConversationSession]:
        return [self._sessions[session_id] for session_id in self._order]

    def get(self, session_id: str) -> ConversationSession | None:
        return self._sessions.get(session_id)

    def _remember(self, session: ConversationSession, *, front: bool = False) -> None:
        if session.id not in self._sessions:
            if front:
                self._order.insert(0, session.id)
            else:
                self._order.append(session.id)
        self._sessions[session.id] = session

    def _token(self) -> str:
        token = self._context.snapshot().token
        if not token:
            raise MissingCredentials("No authentication token")
        return token

    def _go(self, session_id: str | None) -> None:
        if self._navigate is not None:
            self._navigate(session_id)

    async def ensure_conversation(
        self,
        first_message: str,
        *,
        model_id: str | None = None,
        prompt_id: str | None = None,
    ) -> str:
        """Return the active conversation id, creating one if there is none yet."""

        active = self.active_id
        if active:
            self.phase = ThreadPhase.ASSIGNED
            return active
        if self.phase is ThreadPhase.CREATING:
            raise ConversationBusy("A conversation is already being created")

        try:
            token = self._token()
        except MissingCredentials as exc:
            raise ConversationCreateError(str(exc)) from exc
        title = derive_title(first_message, self._settings.title_max_length, self._settings.title_ellipsis)
        model = model_id or self._settings.default_model_id
        prompt = prompt_id or self._settings.default_prompt_id

        self.phase = ThreadPhase.CREATING
        try:
            with TimedSection(StreamMetrics.observe_conversation_create):
                async with self._backend_factory(token) as backend:
                    session = await backend.create_session(model, title, prompt)
            self._remember(session, front=True)
            self._context.set_session_id(session.id)
            self.phase = ThreadPhase.ASSIGNED
        except (BackendError, httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            # KeyError/TypeError/ValueError: a 2xx reply without a usable session payload
            self._logger.warning("conversation.create.failed", error=repr(exc))
            raise ConversationCreateError(f"Failed to create conversation: {exc}") from exc
        finally:
            if self.phase is ThreadPhase.CREATING:
                self.phase = ThreadPhase.NONE

        self._logger.info("conversation.created", session_id=session.id, model_id=model)
        self._go(session.id)
        self.schedule_refresh()
        return session.id

    def schedule_refresh(self) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.refresh())
        task.add_done_callback(self._refresh_done)
        self._refresh_task = task
        return task

    def _refresh_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("conversation.refresh.failed", error=str(exc))

    async def wait_for_refresh(self) -> None:
        task = self._refresh_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def refresh(self, status_filter: str | None = None) -> list[ConversationSession]:
        async with self._backend_factory(self._token()) as backend:
            sessions, total = await backend.list_sessions(
                status_filter=status_filter,
                limit=self._settings.conversation_page_size,
            )
        self._sessions = {}
        self._order = []
        for session in sessions:
            self._remember(session)
        self.total = total
        return sessions

    async def select(self, thread_id: str | None) -> list[Message]:
        """Switch the active thread and return its persisted history."""

        if not thread_id:
            self._context.clear_session()
            self.phase = ThreadPhase.NONE
            return []
        self._context.set_session_id(thread_id)
        self.phase = ThreadPhase.ASSIGNED
        return await self.load_history(thread_id)

    async def load_history(self, thread_id: str) -> list[Message]:
        async with self._backend_factory(self._token()) as backend:
            try:
                detail = await backend.get_session(thread_id)
            except SessionNotFound:
                self._logger.info("conversation.history.missing", session_id=thread_id)
                return []
        self._remember(detail.session)
        return list(detail.messages)

    async def rename(self, session_id: str, title: str) -> ConversationSession:
        async with self._backend_factory(self._token()) as backend:
            updated = await backend.update_session(session_id, title=title)
        self._remember(updated)
        return updated

    async def delete(self, session_id: str) -> None:
        async with self._backend_factory(self._token()) as backend:
            await backend.delete_session(session_id)
        self._sessions.pop(session_id, None)
        if session_id in self._order:
            self._order.remove(session_id)
        if self.active_id == session_id:
            self._context.clear_session()
            self.phase = ThreadPhase.NONE
            self._go(None)


__all__ = [
    "ConversationBusy",
    "ConversationController",
    "ConversationCreateError",
    "ThreadPhase",
    "derive_title",
]

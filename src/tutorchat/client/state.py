"""Client-side chat state and the reducer that applies stream events to it."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from tutorchat.models import Message, RefinedPromptResult
from tutorchat.sse import (
    Done,
    PromptRefined,
    PromptRefining,
    RagSearch,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallEvent,
)


class LoadingStage(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    SEARCHING = "searching"
    FOUND = "found"
    STREAMING = "streaming"
    ERROR = "error"


@dataclass
class RAGSearchState:
    is_searching: bool = False
    query: str | None = None
    results_count: int | None = None
    processing_time: float | None = None
    error: str | None = None


@dataclass
class RefinedPromptState:
    is_refining: bool = False
    original_prompt: str | None = None
    result: RefinedPromptResult | None = None
    error: str | None = None


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ChatState:
    """Transcript plus the ephemeral indicators of the send in progress."""

    messages: list[Message] = field(default_factory=list)
    stage: LoadingStage = LoadingStage.IDLE
    rag_search: RAGSearchState = field(default_factory=RAGSearchState)
    refined_prompt: RefinedPromptState = field(default_factory=RefinedPromptState)
    is_sending: bool = False
    open_index: int | None = None
    load_error: str | None = None

    @property
    def open_message(self) -> Message | None:
        if self.open_index is None:
            return None
        return self.messages[self.open_index]

    def reset_for_send(self) -> None:
        self.stage = LoadingStage.IDLE
        self.rag_search = RAGSearchState()
        self.refined_prompt = RefinedPromptState()

    def open_assistant(self) -> Message:
        placeholder = Message(role="assistant", content="", created_at=utc_now())
        self.messages.append(placeholder)
        self.open_index = len(self.messages) - 1
        self.stage = LoadingStage.ANALYZING
        return placeholder

    def close_stream(self) -> None:
        self.open_index = None

    def append_error(self, text: str) -> Message:
        bubble = Message(role="assistant", content=text, created_at=utc_now(), error=True)
        self.messages.append(bubble)
        return bubble

    def fail_open(self, text: str) -> None:
        """Turn an empty open placeholder into an error bubble, or append one after partial text."""

        message = self.open_message
        if message is not None and not message.content:
            message.content = text
            message.error = True
        else:
            self.append_error(text)
        self.close_stream()
        self.stage = LoadingStage.ERROR

    def replace_transcript(self, messages: list[Message]) -> None:
        self.messages = list(messages)
        self.open_index = None
        self.load_error = None
        self.reset_for_send()


class Renderer(Protocol):
    """Paints chat state. ``flush`` must make the last render visible before returning."""

    def render(self, state: ChatState) -> None:
        """Update the view from ``state``."""

    def flush(self) -> None:
        """Synchronously commit the pending render."""


class NullRenderer:
    def render(self, state: ChatState) -> None:
        return None

    def flush(self) -> None:
        return None


def apply_event(state: ChatState, event: StreamEvent) -> None:
    """Apply one normalised event to the open assistant message.

    This is the only place events are dispatched on type; an event type
    without a branch here is a programming error.
    """

    message = state.open_message
    if message is None:
        # Stream already finalised; late or replayed events change nothing
        return

    if isinstance(event, TextDelta):
        message.content += event.text
        state.rag_search.is_searching = False
        state.stage = LoadingStage.STREAMING
    elif isinstance(event, RagSearch):
        message.rag_searched = True
        if event.status == "searching":
            state.rag_search = RAGSearchState(is_searching=True, query=event.query)
            state.stage = LoadingStage.SEARCHING
        else:
            state.rag_search = RAGSearchState(
                is_searching=False,
                query=event.query or state.rag_search.query,
                results_count=event.results_count,
                processing_time=event.processing_time,
                error=event.error,
            )
            state.stage = LoadingStage.FOUND
    elif isinstance(event, PromptRefining):
        state.refined_prompt = RefinedPromptState(
            is_refining=event.status == "refining",
            original_prompt=event.original_prompt,
            error=event.error,
        )
    elif isinstance(event, PromptRefined):
        message.refined_prompt = event.result
        state.refined_prompt = RefinedPromptState(
            is_refining=False,
            original_prompt=event.result.original,
            result=event.result,
            error=event.result.error,
        )
    elif isinstance(event, ToolCallEvent):
        calls = [call for call in message.tool_calls if not (event.call.id and call.id == event.call.id)]
        calls.append(event.call)
        message.tool_calls = calls
    elif isinstance(event, Done):
        if event.content:
            message.content = event.content
        if event.sources:
            message.sources = list(event.sources)
            message.rag_searched = True
        state.rag_search.is_searching = False
        state.close_stream()
        state.stage = LoadingStage.IDLE
    elif isinstance(event, StreamError):
        state.rag_search.is_searching = False
        state.fail_open(event.message)
    else:
        raise TypeError(f"Unhandled stream event: {event!r}")


__all__ = [
    "ChatState",
    "LoadingStage",
    "NullRenderer",
    "RAGSearchState",
    "RefinedPromptState",
    "Renderer",
    "apply_event",
    "utc_now",
]

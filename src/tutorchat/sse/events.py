"""Normalized stream events and their proxy wire encoding."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Literal, Sequence, Union

from tutorchat.models import RAGSource, RefinedPromptResult, ToolCall


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True)
class TextDelta:
    kind: ClassVar[str] = "text-delta"
    terminal: ClassVar[bool] = False

    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.kind, "textDelta": self.text}


@dataclass(frozen=True)
class RagSearch:
    kind: ClassVar[str] = "rag-search"
    terminal: ClassVar[bool] = False

    status: Literal["searching", "completed"]
    query: str | None = None
    results_count: int | None = None
    processing_time: float | None = None
    error: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return _compact(
            {
                "type": self.kind,
                "status": self.status,
                "query": self.query,
                "resultsCount": self.results_count,
                "processingTime": self.processing_time,
                "error": self.error,
            }
        )


@dataclass(frozen=True)
class PromptRefining:
    kind: ClassVar[str] = "refine-prompt"
    terminal: ClassVar[bool] = False

    status: Literal["refining", "completed"]
    original_prompt: str | None = None
    error: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return _compact(
            {
                "type": self.kind,
                "status": self.status,
                "originalPrompt": self.original_prompt,
                "error": self.error,
            }
        )


@dataclass(frozen=True)
class PromptRefined:
    kind: ClassVar[str] = "refine-prompt-result"
    terminal: ClassVar[bool] = False

    result: RefinedPromptResult

    def to_wire(self) -> dict[str, Any]:
        return _compact({"type": self.kind, **asdict(self.result)})


@dataclass(frozen=True)
class ToolCallEvent:
    kind: ClassVar[str] = "tool-call"
    terminal: ClassVar[bool] = False

    call: ToolCall

    def to_wire(self) -> dict[str, Any]:
        return _compact(
            {
                "type": self.kind,
                "toolCallId": self.call.id,
                "toolName": self.call.name,
                "args": dict(self.call.arguments),
                "result": self.call.result,
            }
        )


@dataclass(frozen=True)
class Done:
    kind: ClassVar[str] = "finish"
    terminal: ClassVar[bool] = True

    content: str | None = None
    sources: Sequence[RAGSource] = field(default_factory=tuple)

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind, "finishReason": "stop"}
        if self.content is not None:
            payload["content"] = self.content
        if self.sources:
            payload["sources"] = [asdict(source) for source in self.sources]
        return payload


@dataclass(frozen=True)
class StreamError:
    kind: ClassVar[str] = "error"
    terminal: ClassVar[bool] = True

    message: str
    status_code: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return _compact(
            {
                "type": "finish",
                "finishReason": "error",
                "error": self.message,
                "statusCode": self.status_code,
            }
        )


StreamEvent = Union[TextDelta, RagSearch, PromptRefining, PromptRefined, ToolCallEvent, Done, StreamError]


def format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def format_comment(key: str, value: str) -> str:
    return f": {key}: {value}\n"


__all__ = [
    "Done",
    "PromptRefined",
    "PromptRefining",
    "RagSearch",
    "StreamError",
    "StreamEvent",
    "TextDelta",
    "ToolCallEvent",
    "format_comment",
    "format_sse",
]

"""Shared domain models used by the proxy and the chat client."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

Role = Literal["user", "assistant", "system", "tool"]
SessionStatus = Literal["active", "completed"]


@dataclass(frozen=True)
class RAGSource:
    """Document chunk cited by the assistant after a retrieval search."""

    document_id: str
    document_name: str
    page_number: int
    similarity_score: float
    chunk_index: int | None = None


@dataclass(frozen=True)
class ToolCall:
    """Tool invocation requested by the LLM, optionally paired with its result."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    result: Any = None


@dataclass(frozen=True)
class RefinedPromptResult:
    """Original and rewritten versions of a user prompt."""

    original: str
    refined: str
    success: bool
    error: str | None = None


@dataclass
class Message:
    """One transcript entry.

    Assistant messages grow while they are the open slot of an active stream and
    are left untouched once that stream completes, errors, or is aborted.
    """

    role: Role
    content: str
    created_at: str | None = None
    sources: list[RAGSource] = field(default_factory=list)
    rag_searched: bool = False
    tool_calls: list[ToolCall] = field(default_factory=list)
    refined_prompt: RefinedPromptResult | None = None
    error: bool = False


@dataclass(frozen=True)
class ConversationSession:
    """Backend-owned conversation record."""

    id: str
    title: str
    model_id: str
    status: SessionStatus = "active"
    total_messages: int = 0
    started_at: str | None = None
    updated_at: str | None = None
    prompt_id: str | None = None
    prompt_name: str | None = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "ConversationSession":
        status = str(data.get("status") or "active").lower()
        prompt = data.get("prompt")
        prompt_name = prompt.get("name") if isinstance(prompt, Mapping) else data.get("prompt_name")
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "New Chat",
            model_id=data.get("model_id") or "",
            status="completed" if status == "completed" else "active",
            total_messages=int(data.get("total_messages") or 0),
            started_at=data.get("started_at"),
            updated_at=data.get("updated_at") or data.get("started_at"),
            prompt_id=data.get("prompt_id"),
            prompt_name=prompt_name,
        )


@dataclass(frozen=True)
class ConversationDetail:
    """Conversation record together with its persisted history."""

    session: ConversationSession
    messages: Sequence[Message]

"""SSE framing and event normalisation."""

from .events import (
    Done,
    PromptRefined,
    PromptRefining,
    RagSearch,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallEvent,
    format_comment,
    format_sse,
)
from .normalizer import normalize_events, normalize_frame, normalize_sources
from .parser import SESSION_ID_KEY, SSEFrame, SSEFrameParser, aiter_frames

__all__ = [
    "Done",
    "PromptRefined",
    "PromptRefining",
    "RagSearch",
    "SESSION_ID_KEY",
    "SSEFrame",
    "SSEFrameParser",
    "StreamError",
    "StreamEvent",
    "TextDelta",
    "ToolCallEvent",
    "aiter_frames",
    "format_comment",
    "format_sse",
    "normalize_events",
    "normalize_frame",
    "normalize_sources",
]

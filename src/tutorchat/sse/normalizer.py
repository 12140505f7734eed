"""Map backend and proxy SSE payloads onto :data:`StreamEvent`.

Three historical wire formats are understood:

* named backend events (``event: chunk`` + ``data: {"content": ...}``),
* proxy frames carrying a ``type`` field (``text-delta``/``finish``),
* unnamed legacy frames recognised by their shape (``role``/``content``/``error``).

Everything here is pure: no UI state is touched, callers react to the events.
"""

from __future__ import annotations

from typing import Any, AsyncIterable, AsyncIterator, Callable, Mapping

from tutorchat.metrics.observability import get_logger
from tutorchat.models import RAGSource, RefinedPromptResult, ToolCall
from tutorchat.sse.events import (
    Done,
    PromptRefined,
    PromptRefining,
    RagSearch,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallEvent,
)
from tutorchat.sse.parser import SSEFrame

_logger = get_logger("normalizer")


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_mapping(data: Any) -> Mapping[str, Any]:
    return data if isinstance(data, Mapping) else {}


def normalize_sources(raw: Any) -> tuple[RAGSource, ...]:
    """Normalise a backend source list. Every retrieved chunk is kept."""

    if not isinstance(raw, list):
        return ()
    sources: list[RAGSource] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        document_id = str(_pick(item, "document_id", "documentId") or "")
        sources.append(
            RAGSource(
                document_id=document_id,
                document_name=str(_pick(item, "document_name", "filename", "documentName") or document_id),
                page_number=_as_int(_pick(item, "page_number", "page", "pageNumber")) or 0,
                similarity_score=_as_float(_pick(item, "similarity_score", "score", "similarityScore")) or 0.0,
                chunk_index=_as_int(_pick(item, "chunk_index", "chunkIndex")),
            )
        )
    return tuple(sources)


def _error_message(data: Any) -> str:
    if isinstance(data, str) and data:
        return data
    mapping = _as_mapping(data)
    message = _pick(mapping, "error", "message", "detail")
    if isinstance(message, Mapping):
        message = _pick(message, "message", "detail") or str(dict(message))
    return str(message) if message else "The assistant failed to respond."


def _ignore(data: Any) -> None:
    return None


def _chunk(data: Any) -> TextDelta | None:
    content = data if isinstance(data, str) else _pick(_as_mapping(data), "content", "textDelta", "delta")
    if isinstance(content, str) and content:
        return TextDelta(text=content)
    return None


def _done(data: Any) -> Done:
    mapping = _as_mapping(data)
    content = mapping.get("content")
    return Done(
        content=content if isinstance(content, str) else None,
        sources=normalize_sources(mapping.get("sources")),
    )


def _error(data: Any) -> StreamError:
    mapping = _as_mapping(data)
    return StreamError(
        message=_error_message(data),
        status_code=_as_int(_pick(mapping, "status_code", "statusCode")),
    )


def _finish(data: Any) -> Done | StreamError:
    mapping = _as_mapping(data)
    if _pick(mapping, "finishReason", "finish_reason") == "error":
        return _error(data)
    return _done(data)


def _rag_search(data: Any) -> RagSearch:
    mapping = _as_mapping(data)
    status = "completed" if mapping.get("status") == "completed" else "searching"
    query = mapping.get("query")
    error = mapping.get("error")
    return RagSearch(
        status=status,
        query=query if isinstance(query, str) else None,
        results_count=_as_int(_pick(mapping, "results_count", "resultsCount")),
        processing_time=_as_float(_pick(mapping, "processing_time", "processingTime")),
        error=str(error) if error else None,
    )


def _refine_prompt(data: Any) -> PromptRefining:
    mapping = _as_mapping(data)
    status = "completed" if mapping.get("status") == "completed" else "refining"
    original = _pick(mapping, "original_prompt", "originalPrompt")
    error = mapping.get("error")
    return PromptRefining(
        status=status,
        original_prompt=str(original) if original is not None else None,
        error=str(error) if error else None,
    )


def _refine_prompt_result(data: Any) -> PromptRefined:
    mapping = _as_mapping(data)
    error = mapping.get("error")
    success = mapping.get("success")
    return PromptRefined(
        result=RefinedPromptResult(
            original=str(_pick(mapping, "original", "original_prompt", "originalPrompt") or ""),
            refined=str(_pick(mapping, "refined", "refined_prompt", "refinedPrompt") or ""),
            success=bool(success) if success is not None else not error,
            error=str(error) if error else None,
        )
    )


def _tool_call(data: Any) -> ToolCallEvent:
    mapping = _as_mapping(data)
    arguments = _pick(mapping, "arguments", "args", "input")
    return ToolCallEvent(
        call=ToolCall(
            id=str(_pick(mapping, "id", "tool_call_id", "toolCallId") or ""),
            name=str(_pick(mapping, "name", "tool_name", "toolName") or ""),
            arguments=arguments if isinstance(arguments, Mapping) else {},
            result=mapping.get("result"),
        )
    )


_Handler = Callable[[Any], "StreamEvent | None"]

_HANDLERS: Mapping[str, _Handler] = {
    "user_message": _ignore,
    "chunk": _chunk,
    "text-delta": _chunk,
    "textDelta": _chunk,
    "done": _done,
    "finish": _finish,
    "error": _error,
    "rag_search": _rag_search,
    "rag-search": _rag_search,
    "refine_prompt": _refine_prompt,
    "refine-prompt": _refine_prompt,
    "refine_prompt_result": _refine_prompt_result,
    "refine-prompt-result": _refine_prompt_result,
    "tool_call": _tool_call,
    "tool-call": _tool_call,
}


def _sniff_legacy(data: Any) -> StreamEvent | None:
    mapping = _as_mapping(data)
    if mapping.get("error"):
        return _error(data)
    role = mapping.get("role")
    if role == "user":
        return None
    if role == "assistant":
        return _done(data)
    return _chunk(data)


def normalize_frame(frame: SSEFrame) -> StreamEvent | None:
    """Return the canonical event for ``frame`` or ``None`` when it carries nothing."""

    data = frame.data
    if frame.event:
        handler = _HANDLERS.get(frame.event)
    elif isinstance(data, Mapping) and isinstance(data.get("type"), str):
        handler = _HANDLERS.get(data["type"])
    else:
        return _sniff_legacy(data)
    if handler is None:
        _logger.warning("sse.event.unknown", event=frame.event or _as_mapping(data).get("type"))
        return None
    return handler(data)


async def normalize_events(frames: AsyncIterable[SSEFrame]) -> AsyncIterator[StreamEvent]:
    """Yield normalised events, stopping after the first terminal one."""

    async for frame in frames:
        event = normalize_frame(frame)
        if event is None:
            continue
        yield event
        if event.terminal:
            return


__all__ = ["normalize_events", "normalize_frame", "normalize_sources"]

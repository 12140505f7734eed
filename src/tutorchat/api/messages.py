"""Resolve the user message, credential and session id from proxy requests."""

from __future__ import annotations

import json
from typing import Any, Callable, Mapping, Sequence

from pydantic import ValidationError

from tutorchat.api.schemas import ChatProxyRequest

SESSION_HEADER = "x-session-id"

TextDetector = Callable[[Any], "str | None"]


def _text_parts(parts: Any) -> str | None:
    if not isinstance(parts, list):
        return None
    return "".join(
        str(part.get("text") or "") for part in parts if isinstance(part, Mapping) and part.get("type") == "text"
    )


def _from_parts(entry: Mapping[str, Any]) -> str | None:
    return _text_parts(entry.get("parts"))


def _from_string_content(entry: Mapping[str, Any]) -> str | None:
    content = entry.get("content")
    return content if isinstance(content, str) else None


def _from_content_parts(entry: Mapping[str, Any]) -> str | None:
    return _text_parts(entry.get("content"))


def _from_object_content(entry: Mapping[str, Any]) -> str | None:
    content = entry.get("content")
    return json.dumps(content) if isinstance(content, Mapping) else None


# Tried in order; the first detector that recognises the shape wins
CONTENT_SHAPES: Sequence[TextDetector] = (
    _from_parts,
    _from_string_content,
    _from_content_parts,
    _from_object_content,
)


def message_text(entry: Any) -> str:
    if not isinstance(entry, Mapping):
        return ""
    for detector in CONTENT_SHAPES:
        text = detector(entry)
        if text is not None:
            return text
    return ""


def _direct_message(body: Any) -> str | None:
    if isinstance(body, Mapping) and isinstance(body.get("message"), str):
        return body["message"] or None
    return None


def _latest_user_message(body: Any) -> str | None:
    if not isinstance(body, Mapping) or not isinstance(body.get("messages"), list):
        return None
    for entry in reversed(body["messages"]):
        if isinstance(entry, Mapping) and entry.get("role") == "user":
            text = message_text(entry)
            if text:
                return text
    return None


def _bare_string(body: Any) -> str | None:
    return body if isinstance(body, str) and body else None


def _fallback_fields(body: Any) -> str | None:
    if not isinstance(body, Mapping) or body.get("messages"):
        return None
    for key in ("text", "input", "content"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


BODY_SHAPES: Sequence[TextDetector] = (
    _direct_message,
    _latest_user_message,
    _bare_string,
    _fallback_fields,
)


def extract_user_message(body: Any) -> str | None:
    """Return the most recent user-authored text, or ``None``."""

    for detector in BODY_SHAPES:
        text = detector(body)
        if text:
            return text
    return None


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def resolve_session_id(body: Any, headers: Mapping[str, str]) -> str | None:
    """Body ``threadId``, then body ``sessionId``, then the ``X-Session-Id`` header."""

    if isinstance(body, Mapping):
        try:
            parsed = ChatProxyRequest.model_validate(body)
        except ValidationError:
            parsed = None
        if parsed is not None:
            for candidate in (parsed.thread_id, parsed.session_id):
                if candidate and candidate.strip():
                    return candidate.strip()
    header = headers.get(SESSION_HEADER)
    return header.strip() if header and header.strip() else None


__all__ = [
    "BODY_SHAPES",
    "CONTENT_SHAPES",
    "SESSION_HEADER",
    "bearer_token",
    "extract_user_message",
    "message_text",
    "resolve_session_id",
]

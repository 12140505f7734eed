"""Pydantic models for the TutorChat proxy API."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatProxyRequest(BaseModel):
    """Accepted body shapes for ``POST /api/chat``.

    Either ``message`` or ``messages`` carries the user text; unknown keys are
    kept so the fallback shapes (``text``, ``input``, ``content``) still resolve.
    The message fields are loose so a malformed history never hides the
    session id, and numeric ids are read as strings.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    messages: Optional[Any] = Field(default=None, description="Chat history, newest last")
    message: Optional[Any] = Field(default=None, description="Single user message")
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ProxyErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    expected: Optional[str] = None
    correlation_id: Optional[str] = None

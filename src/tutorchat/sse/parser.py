"""Incremental Server-Sent-Events frame parser."""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable

from tutorchat.metrics.observability import StreamMetrics, get_logger

SESSION_ID_KEY = "session_id"


@dataclass(frozen=True)
class SSEFrame:
    """A single ``data:`` payload tagged with the event type in effect."""

    event: str | None
    data: Any


class SSEFrameParser:
    """Split an incrementally delivered byte stream into SSE frames.

    Bytes are decoded with an incremental UTF-8 decoder and buffered until a
    full line is available, so the frames produced do not depend on how the
    network happened to fragment the stream. Each ``data:`` line becomes one
    frame as soon as its line is complete. Comment lines of the form
    ``: key: value`` are recorded in :attr:`metadata`.
    """

    def __init__(self, on_comment: Callable[[str], None] | None = None) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._on_comment = on_comment
        self._logger = get_logger("sse")
        self.metadata: dict[str, str] = {}
        self.malformed_count = 0

    @property
    def session_id(self) -> str | None:
        return self.metadata.get(SESSION_ID_KEY)

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        return self._consume(self._decoder.decode(chunk), final=False)

    def close(self) -> list[SSEFrame]:
        """Flush a trailing line that was never newline-terminated."""

        return self._consume(self._decoder.decode(b"", final=True), final=True)

    def _consume(self, text: str, *, final: bool) -> list[SSEFrame]:
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = "" if final else lines.pop()
        frames: list[SSEFrame] = []
        for line in lines:
            frame = self._process_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def _process_line(self, line: str) -> SSEFrame | None:
        if not line:
            self._event = None
            return None
        if line.startswith(":"):
            self._handle_comment(line[1:].strip())
            return None
        if line.startswith("event:"):
            self._event = line[len("event:") :].strip() or None
            return None
        if line.startswith("data:"):
            payload = line[len("data:") :].strip()
            if not payload:
                return None
            try:
                data = json.loads(payload)
            except ValueError:
                self.malformed_count += 1
                StreamMetrics.observe_malformed_frame()
                self._logger.warning("sse.frame.malformed", event=self._event, payload=payload[:200])
                return None
            return SSEFrame(event=self._event, data=data)
        # id:, retry: and unknown fields carry nothing we use
        return None

    def _handle_comment(self, comment: str) -> None:
        key, sep, value = comment.partition(":")
        if sep and key.strip():
            self.metadata[key.strip()] = value.strip()
        if self._on_comment is not None:
            self._on_comment(comment)


async def aiter_frames(
    chunks: AsyncIterable[bytes],
    parser: SSEFrameParser | None = None,
) -> AsyncIterator[SSEFrame]:
    """Yield frames from an async byte stream in arrival order."""

    parser = parser or SSEFrameParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
    for frame in parser.close():
        yield frame


__all__ = ["SESSION_ID_KEY", "SSEFrame", "SSEFrameParser", "aiter_frames"]

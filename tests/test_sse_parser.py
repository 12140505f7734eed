"""Tests for the incremental SSE frame parser."""

from __future__ import annotations

import asyncio
from typing import Iterable

from tutorchat.sse import SSEFrame, SSEFrameParser, aiter_frames

STREAM = (
    "event: user_message\n"
    'data: {"content": "hello"}\n'
    "\n"
    "event: chunk\n"
    'data: {"content": "Grüße 👋"}\n'
    "\n"
    ": session_id: s1\n"
    "event: chunk\r\n"
    'data: {"content": " from the tutor"}\r\n'
    "\r\n"
    "event: done\n"
    'data: {"sources": []}\n'
    "\n"
).encode("utf-8")


def _parse(chunks: Iterable[bytes], parser: SSEFrameParser | None = None) -> list[SSEFrame]:
    parser = parser or SSEFrameParser()
    frames: list[SSEFrame] = []
    for chunk in chunks:
        frames.extend(parser.feed(chunk))
    frames.extend(parser.close())
    return frames


def test_whole_stream_frames():
    frames = _parse([STREAM])
    assert frames == [
        SSEFrame("user_message", {"content": "hello"}),
        SSEFrame("chunk", {"content": "Grüße 👋"}),
        SSEFrame("chunk", {"content": " from the tutor"}),
        SSEFrame("done", {"sources": []}),
    ]


def test_every_split_point_yields_identical_frames():
    expected = _parse([STREAM])
    # Includes offsets inside the multi-byte characters
    for offset in range(len(STREAM) + 1):
        assert _parse([STREAM[:offset], STREAM[offset:]]) == expected, offset


def test_byte_at_a_time_delivery():
    expected = _parse([STREAM])
    assert _parse(STREAM[i : i + 1] for i in range(len(STREAM))) == expected


def test_malformed_data_line_is_skipped():
    body = (
        b'event: chunk\ndata: {"content": "A"}\n\n'
        b"event: chunk\ndata: {not json\n\n"
        b'event: chunk\ndata: {"content": "B"}\n\n'
    )
    parser = SSEFrameParser()
    frames = _parse([body], parser)
    assert [frame.data["content"] for frame in frames] == ["A", "B"]
    assert parser.malformed_count == 1


def test_comment_metadata_and_callback():
    seen: list[str] = []
    parser = SSEFrameParser(on_comment=seen.append)
    _parse([STREAM], parser)
    assert parser.session_id == "s1"
    assert seen == ["session_id: s1"]


def test_blank_line_resets_event_type():
    frames = _parse([b'event: chunk\ndata: {"a": 1}\n\ndata: {"b": 2}\n\n'])
    assert frames == [SSEFrame("chunk", {"a": 1}), SSEFrame(None, {"b": 2})]


def test_trailing_line_is_flushed_on_close():
    parser = SSEFrameParser()
    assert parser.feed(b'data: {"content": "x"}') == []
    assert parser.close() == [SSEFrame(None, {"content": "x"})]


def test_empty_data_and_unknown_fields_are_ignored():
    frames = _parse([b"id: 7\nretry: 1000\ndata:\n\ndata: [1, 2]\n\n"])
    assert frames == [SSEFrame(None, [1, 2])]


def test_aiter_frames_preserves_arrival_order():
    async def chunks():
        for index in range(0, len(STREAM), 7):
            yield STREAM[index : index + 7]

    async def collect() -> list[SSEFrame]:
        return [frame async for frame in aiter_frames(chunks())]

    assert asyncio.run(collect()) == _parse([STREAM])

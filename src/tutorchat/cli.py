"""Terminal chat client that streams assistant replies through the proxy."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from contextlib import contextmanager
from typing import Callable, Iterator, Sequence, TextIO

from tutorchat.client import ChatController, ChatState, LoadingStage, SendOutcome, build_controller
from tutorchat.config import get_settings
from tutorchat.metrics.observability import configure_logging


class TerminalRenderer:
    """Writes assistant text as it arrives and flushes after every event."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self._seen = 0
        self._printed = ""
        self._stage = LoadingStage.IDLE

    def restart(self) -> None:
        """Print the whole transcript again on the next render."""

        self._seen = 0
        self._printed = ""

    def _note(self, state: ChatState) -> None:
        if state.stage is self._stage:
            return
        self._stage = state.stage
        if self._printed:
            return
        if state.stage is LoadingStage.SEARCHING:
            query = state.rag_search.query or "your question"
            self._stream.write(f"[searching documents for: {query}]\n")
        elif state.stage is LoadingStage.FOUND:
            self._stream.write(f"[found {state.rag_search.results_count or 0} passages]\n")

    def render(self, state: ChatState) -> None:
        if len(state.messages) < self._seen:
            self.restart()
        self._note(state)
        while self._seen < len(state.messages):
            index = self._seen
            message = state.messages[index]
            is_open = index == state.open_index
            if message.role != "assistant":
                if not is_open and message.role == "user" and state.open_index is None:
                    self._stream.write(f"you> {message.content}\n")
                self._seen += 1
                continue
            if self._printed and not message.content.startswith(self._printed):
                # The final text replaced the streamed deltas
                self._stream.write("\n")
                self._printed = ""
            if not self._printed:
                if is_open and not message.content:
                    return
                self._stream.write("error> " if message.error else "assistant> ")
            self._stream.write(message.content[len(self._printed):])
            if is_open:
                self._printed = message.content
                return
            self._stream.write("\n")
            for number, source in enumerate(message.sources, start=1):
                self._stream.write(f"  [{number}] {source.document_name} p.{source.page_number}\n")
            self._seen += 1
            self._printed = ""

    def flush(self) -> None:
        self._stream.flush()


@contextmanager
def interrupt_sets(loop: asyncio.AbstractEventLoop, abort: asyncio.Event) -> Iterator[None]:
    """Route Ctrl+C to ``abort`` while a reply is streaming."""

    try:
        loop.add_signal_handler(signal.SIGINT, abort.set)
    except (NotImplementedError, RuntimeError):
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _print_sessions(controller: ChatController, out: TextIO) -> None:
    sessions = controller.conversations.conversations
    if not sessions:
        out.write("No conversations yet.\n")
        return
    for session in sessions:
        marker = "*" if session.id == controller.thread_id else " "
        out.write(f"{marker} {session.id}  {session.title}  ({session.total_messages} messages)\n")


def run_chat(
    controller: ChatController,
    renderer: TerminalRenderer,
    *,
    read_line: Callable[[str], str] = input,
    out: TextIO | None = None,
) -> int:
    out = out or sys.stdout
    loop = asyncio.new_event_loop()
    try:
        if controller.thread_id:
            loop.run_until_complete(controller.navigate_to(controller.thread_id))
        while True:
            try:
                line = read_line("you> ")
            except (EOFError, KeyboardInterrupt):
                out.write("\n")
                return 0
            text = line.strip()
            if not text:
                continue
            if text in {"/quit", "/exit"}:
                return 0
            if text == "/new":
                renderer.restart()
                loop.run_until_complete(controller.navigate_to(None))
                continue
            if text.startswith("/open"):
                _, _, thread_id = text.partition(" ")
                renderer.restart()
                loop.run_until_complete(controller.navigate_to(thread_id.strip() or None))
                if controller.state.load_error:
                    out.write(f"Could not load conversation: {controller.state.load_error}\n")
                continue
            if text == "/list":
                try:
                    loop.run_until_complete(controller.conversations.refresh())
                except Exception as exc:  # reported, the chat keeps running
                    out.write(f"Could not list conversations: {exc}\n")
                    continue
                _print_sessions(controller, out)
                continue

            abort = asyncio.Event()
            with interrupt_sets(loop, abort):
                outcome = loop.run_until_complete(controller.send(text, abort=abort))
            if outcome is SendOutcome.ABORTED:
                out.write("\n[stopped]\n")
            elif outcome is SendOutcome.TRUNCATED:
                out.write("\n[the reply ended unexpectedly]\n")
            out.flush()
    finally:
        loop.run_until_complete(controller.aclose())
        loop.close()


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with the TutorChat assistant from a terminal.")
    parser.add_argument("--proxy-url", type=str, default=None, help="Base URL of the chat proxy")
    parser.add_argument("--backend-url", type=str, default=None, help="Backend API base URL for conversations")
    parser.add_argument(
        "--token",
        type=str,
        default=os.environ.get("TUTORCHAT_TOKEN"),
        help="Bearer token (defaults to TUTORCHAT_TOKEN)",
    )
    parser.add_argument("--thread", type=str, default=None, help="Resume an existing conversation id")
    parser.add_argument("--model", type=str, default=None, help="Model id used for new conversations")
    parser.add_argument("--idle-timeout", type=float, default=None, help="Fail a reply after N silent seconds")
    parser.add_argument("--verbose", action="store_true", help="Log transport events to stderr")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging()
    logging.getLogger().setLevel(logging.INFO if args.verbose else logging.WARNING)

    overrides: dict[str, object] = {}
    if args.proxy_url:
        overrides["proxy_url"] = args.proxy_url
    if args.backend_url:
        overrides["backend_api_url"] = args.backend_url
    if args.model:
        overrides["default_model_id"] = args.model
    if args.idle_timeout is not None:
        overrides["stream_idle_timeout_seconds"] = args.idle_timeout
    settings = get_settings(overrides or None)

    if not args.token:
        print("A bearer token is required (--token or TUTORCHAT_TOKEN).", file=sys.stderr)
        return 2

    renderer = TerminalRenderer()
    controller = build_controller(settings, renderer=renderer, token=args.token)
    if args.thread:
        controller.consumer.context.set_session_id(args.thread)
    return run_chat(controller, renderer)


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())

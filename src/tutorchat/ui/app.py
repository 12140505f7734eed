"""Gradio-based chat interface driven by the TutorChat stream consumer."""

from __future__ import annotations

import asyncio
from typing import Callable, Sequence

import gradio as gr

from tutorchat.client import ChatController, ChatState, LoadingStage, build_controller
from tutorchat.config import Settings, get_settings
from tutorchat.models import Message, RAGSource

_STAGE_LABELS = {
    LoadingStage.IDLE: "",
    LoadingStage.ANALYZING: "Analyzing your question...",
    LoadingStage.SEARCHING: "Searching documents...",
    LoadingStage.FOUND: "Found relevant passages, writing the answer...",
    LoadingStage.STREAMING: "Answering...",
    LoadingStage.ERROR: "The assistant failed to respond.",
}


def _format_sources(sources: Sequence[RAGSource]) -> str:
    if not sources:
        return ""
    lines = [
        f"[{index}] {source.document_name} p.{source.page_number} (score {source.similarity_score:.2f})"
        for index, source in enumerate(sources, start=1)
    ]
    return "\n\nSources:\n" + "\n".join(lines)


def _format_message(message: Message) -> dict[str, str]:
    content = message.content
    if message.refined_prompt is not None and message.refined_prompt.success:
        content = f"_Refined prompt: {message.refined_prompt.refined}_\n\n{content}"
    if message.error:
        content = f"⚠️ {content}"
    return {"role": message.role, "content": content + _format_sources(message.sources)}


def _status(state: ChatState) -> str:
    label = _STAGE_LABELS.get(state.stage, "")
    if state.stage is LoadingStage.SEARCHING and state.rag_search.query:
        label = f"Searching documents for “{state.rag_search.query}”..."
    if state.stage is LoadingStage.FOUND and state.rag_search.results_count is not None:
        label = f"Found {state.rag_search.results_count} passages, writing the answer..."
    return label


def snapshot(state: ChatState) -> tuple[list[dict[str, str]], str]:
    history = [_format_message(m) for m in state.messages if m.role in ("user", "assistant")]
    return history, _status(state)


class QueueRenderer:
    """Pushes a snapshot onto an asyncio queue on every flush while a send is streaming."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.active = False
        self._latest: tuple[list[dict[str, str]], str] = ([], "")

    def render(self, state: ChatState) -> None:
        self._latest = snapshot(state)

    def flush(self) -> None:
        if self.active:
            self.queue.put_nowait(self._latest)

    def start(self) -> None:
        while not self.queue.empty():
            self.queue.get_nowait()
        self.active = True

    def finish(self) -> None:
        self.active = False
        self.queue.put_nowait(None)


class BrowserChat:
    """One browser session's controller and the renderer it paints into."""

    def __init__(self, controller: ChatController, renderer: QueueRenderer) -> None:
        controller.consumer.renderer = renderer
        self.controller = controller
        self.renderer = renderer

    def use_token(self, token: str | None) -> None:
        if token and token.strip():
            self.controller.consumer.context.set_token(token.strip())


ControllerFactory = Callable[[QueueRenderer], ChatController]


def default_factory(settings: Settings | None = None) -> ControllerFactory:
    # Browser sessions keep credentials in memory, never in the shared state file
    settings = (settings or get_settings()).model_copy(update={"state_file": None})

    def factory(renderer: QueueRenderer) -> ChatController:
        return build_controller(settings, renderer=renderer)

    return factory


def _chat(session: BrowserChat | None, factory: ControllerFactory) -> BrowserChat:
    if session is not None:
        return session
    renderer = QueueRenderer()
    return BrowserChat(factory(renderer), renderer)


def create_send_handler(factory: ControllerFactory):
    async def handle_send(message: str, token: str | None, session: BrowserChat | None):
        chat = _chat(session, factory)
        chat.use_token(token)
        controller = chat.controller
        if controller.consumer.is_sending:
            history, status = snapshot(controller.state)
            yield history, status, controller.thread_id or "", chat
            return

        chat.renderer.start()

        async def run() -> None:
            try:
                await controller.send(message)
            finally:
                chat.renderer.finish()

        task = asyncio.create_task(run())
        while (item := await chat.renderer.queue.get()) is not None:
            history, status = item
            yield history, status, controller.thread_id or "", chat
        await task
        history, status = snapshot(controller.state)
        yield history, status, controller.thread_id or "", chat

    return handle_send


def create_open_handler(factory: ControllerFactory):
    async def handle_open(thread_id: str | None, token: str | None, session: BrowserChat | None):
        chat = _chat(session, factory)
        chat.use_token(token)
        controller = chat.controller
        await controller.navigate_to((thread_id or "").strip() or None)
        history, status = snapshot(controller.state)
        if controller.state.load_error:
            status = f"⚠️ {controller.state.load_error}"
        return history, status, controller.thread_id or "", chat

    return handle_open


def create_list_handler(factory: ControllerFactory):
    async def handle_list(token: str | None, session: BrowserChat | None):
        chat = _chat(session, factory)
        chat.use_token(token)
        try:
            sessions = await chat.controller.conversations.refresh()
        except Exception as exc:  # shown in the panel
            return f"⚠️ {exc}", chat
        if not sessions:
            return "No conversations yet.", chat
        return "\n".join(f"- `{s.id}` {s.title} ({s.total_messages} messages)" for s in sessions), chat

    return handle_list


def handle_stop(session: BrowserChat | None) -> None:
    if session is not None:
        session.controller.abort()


def build_interface(factory: ControllerFactory | None = None) -> gr.Blocks:
    factory = factory or default_factory()
    handle_send = create_send_handler(factory)
    handle_open = create_open_handler(factory)
    handle_list = create_list_handler(factory)

    async def handle_new(token: str | None, session: BrowserChat | None):
        return await handle_open(None, token, session)

    with gr.Blocks(title="TutorChat") as demo:
        session_state = gr.State(None)
        gr.Markdown("## TutorChat")
        with gr.Row():
            with gr.Column(scale=1):
                token_box = gr.Textbox(label="Access token", type="password")
                thread_box = gr.Textbox(label="Conversation id", placeholder="empty = new conversation")
                with gr.Row():
                    open_btn = gr.Button("Open")
                    new_btn = gr.Button("New chat")
                list_btn = gr.Button("Refresh conversations")
                conversations_md = gr.Markdown("(conversations will appear here)")
            with gr.Column(scale=3):
                chatbot = gr.Chatbot(type="messages", height=480)
                status_md = gr.Markdown("")
                message_box = gr.Textbox(placeholder="Send a message...", lines=2)
                with gr.Row():
                    send_btn = gr.Button("Send", variant="primary")
                    stop_btn = gr.Button("Stop")

        view = [chatbot, status_md, thread_box, session_state]
        send_event = send_btn.click(
            handle_send,
            inputs=[message_box, token_box, session_state],
            outputs=view,
        )
        send_event.then(lambda: "", outputs=message_box)
        stop_btn.click(handle_stop, inputs=session_state)
        open_btn.click(handle_open, inputs=[thread_box, token_box, session_state], outputs=view)
        new_btn.click(handle_new, inputs=[token_box, session_state], outputs=view)
        list_btn.click(handle_list, inputs=[token_box, session_state], outputs=[conversations_md, session_state])

        gr.Markdown(
            "Tip: set `TUTORCHAT_PROXY_URL` and `TUTORCHAT_BACKEND_API_URL` before launching."
        )

    return demo


def launch(*, share: bool = False) -> None:
    """Launch the Gradio interface."""

    demo = build_interface(default_factory(get_settings()))
    demo.launch(share=share)


if __name__ == "__main__":
    launch()

"""Chat client: transport, stream consumer and conversation lifecycle."""

from .consumer import SendOutcome, StreamConsumer
from .context import ClientContext, RequestContext
from .controller import ChatController, build_controller
from .conversations import (
    ConversationBusy,
    ConversationController,
    ConversationCreateError,
    ThreadPhase,
    derive_title,
)
from .state import ChatState, LoadingStage, NullRenderer, Renderer, apply_event
from .storage import JsonFileStorage, MemoryStorage, Storage
from .transport import ChatTransport, MissingCredentials, ProxyError, StreamStalled

__all__ = [
    "ChatController",
    "ChatState",
    "ChatTransport",
    "ClientContext",
    "ConversationBusy",
    "ConversationController",
    "ConversationCreateError",
    "JsonFileStorage",
    "LoadingStage",
    "MemoryStorage",
    "MissingCredentials",
    "NullRenderer",
    "ProxyError",
    "Renderer",
    "RequestContext",
    "SendOutcome",
    "Storage",
    "StreamConsumer",
    "StreamStalled",
    "ThreadPhase",
    "apply_event",
    "build_controller",
    "derive_title",
]

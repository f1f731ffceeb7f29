"""Flashcards chat client.

This package provides the streaming side of the flashcards study app:
- Streaming subsystem: event-stream decoding, shared streaming state, toasts
- Messages: records, persistence mutations and the chat request client
- AI actions: writing-assistant completions
- Infrastructure: config, errors, session logging, timing
"""

try:
    from importlib.metadata import PackageNotFoundError, version as _get_version

    __version__ = _get_version("flashcards-chat-client")
except PackageNotFoundError:
    __version__ = "0.1.0"

from .core import (
    FlashcardsChatError,
    MessageRequestError,
    MutationError,
    SessionLogger,
    StatusMessages,
    StreamUnavailableError,
    Valves,
    create_http_session,
)
from .streaming import (
    NotificationEmitter,
    SSEDecoder,
    SSEParser,
    StreamEvent,
    StreamingStateStore,
    StreamPhase,
    attach_debug_logger,
    parse_raw_event,
)
from .messages import ConvexMutationClient, Message, placeholder_message
from .messages.client import MessagesClient
from .ai import AICompletionClient, Task

__all__ = [
    "__version__",
    "FlashcardsChatError",
    "MessageRequestError",
    "MutationError",
    "SessionLogger",
    "StatusMessages",
    "StreamUnavailableError",
    "Valves",
    "create_http_session",
    "NotificationEmitter",
    "SSEDecoder",
    "SSEParser",
    "StreamEvent",
    "StreamingStateStore",
    "StreamPhase",
    "attach_debug_logger",
    "parse_raw_event",
    "ConvexMutationClient",
    "Message",
    "placeholder_message",
    "MessagesClient",
    "AICompletionClient",
    "Task",
]

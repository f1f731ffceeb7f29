"""Chat messages: records, persistence and the streaming request client.

``MessagesClient`` lives in ``messages.client`` and is re-exported from the
package root; importing it here would cycle through ``streaming.state_store``.
"""

from .models import (
    CompletionRequest,
    CreateMessageRequest,
    Message,
    MessageRole,
    UpdateMessageRequest,
    placeholder_message,
)
from .persistence import ConvexMutationClient, MessagePersistence

__all__ = [
    "CompletionRequest",
    "CreateMessageRequest",
    "Message",
    "MessageRole",
    "UpdateMessageRequest",
    "placeholder_message",
    "ConvexMutationClient",
    "MessagePersistence",
]

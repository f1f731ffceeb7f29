"""Message records and request bodies exchanged with the backend."""

from __future__ import annotations

import time
import uuid
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["user", "assistant"]


def new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


class Message(BaseModel):
    """A chat message as rendered by the client.

    Field aliases follow the backend document shape (``_id``, ``chatId``,
    ``_creationTime``).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id, alias="_id")
    role: MessageRole = "assistant"
    content: str = ""
    chat_id: str = Field(default_factory=new_id, alias="chatId")
    created_at: int = Field(default_factory=now_ms, alias="_creationTime")


def placeholder_message(chat_id: Optional[str] = None) -> Message:
    """Return an inert assistant message with fresh identifiers."""
    if chat_id:
        return Message(role="assistant", content="", chat_id=chat_id)
    return Message(role="assistant", content="")


class _RequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class CreateMessageRequest(_RequestBody):
    """Body of ``POST /ai/chats/assistants``."""

    message_id: str = Field(alias="messageId")


class UpdateMessageRequest(_RequestBody):
    """Body of ``PATCH /messages`` (edit and regenerate)."""

    content: str
    message_id: str = Field(alias="messageId")


class CompletionRequest(_RequestBody):
    """Body of ``POST /ai/completion``."""

    prompt: str
    task: str

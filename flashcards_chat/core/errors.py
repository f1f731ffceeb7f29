"""Error handling and user-facing error messages.

This module handles all error-related functionality:
- FlashcardsChatError hierarchy raised by the streaming and message layers
- StatusMessages: centralized toast texts
- Transport error classification used by the persistence retry policy

Decoding problems never surface here: malformed event blocks are skipped by
the decoder. Transport and setup failures propagate to the calling client,
which reports them through the notification sink.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import aiohttp

LOGGER = logging.getLogger(__name__)


class StatusMessages:
    """Centralized notification texts for the chat surfaces."""

    CREATE_FAILED = "Error creating message"
    UPDATE_FAILED = "Error updating message"
    UPDATE_SUCCEEDED = "Message updated successfully"
    COMPLETION_FAILED = "An error occurred"
    FALLBACK_DESCRIPTION = "Please try again later"


# -----------------------------------------------------------------------------
# Exception Classes
# -----------------------------------------------------------------------------

class FlashcardsChatError(RuntimeError):
    """Base class for every error raised by this package."""


class StreamUnavailableError(FlashcardsChatError):
    """Raised when a response body cannot be read as a stream."""

    def __init__(self, message: str = "No reader available") -> None:
        super().__init__(message)


class MessageRequestError(FlashcardsChatError):
    """Raised when the AI endpoint answers with a non-success status."""

    def __init__(
        self,
        *,
        status: int,
        reason: Optional[str] = None,
        body: Optional[str] = None,
        message: str = "Failed to create message",
    ) -> None:
        self.status = status
        self.reason = (reason or "").strip() or None
        self.body = body or ""
        super().__init__(message)

    def __repr__(self) -> str:
        return f"MessageRequestError(status={self.status!r}, reason={self.reason!r})"


class MutationError(FlashcardsChatError):
    """Raised when the backend rejects a persistence mutation."""

    def __init__(self, path: str, message: Optional[str] = None, data: Any = None) -> None:
        self.path = path
        self.data = data
        super().__init__((message or "").strip() or f"Mutation {path} failed")


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------

def _is_retryable_transport_error(exc: BaseException) -> bool:
    """Return True for connection-level failures worth another attempt.

    HTTP status errors with a 5xx code count as transport failures; 4xx and
    backend-reported mutation errors do not.
    """
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status >= 500
    return isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError))


def error_description(error: BaseException | str | None) -> str:
    """Return the text shown under a toast title for ``error``."""
    if error is None:
        return StatusMessages.FALLBACK_DESCRIPTION
    text = str(error).strip()
    return text or StatusMessages.FALLBACK_DESCRIPTION

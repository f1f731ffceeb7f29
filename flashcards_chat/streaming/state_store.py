"""Observable state for the response that is currently arriving.

Several independent surfaces (message list, message input, regenerate
button) read the same three fields: ``is_thinking``, ``is_streaming`` and
``current_message``. One store instance is owned by the application context
and injected into the clients that write to it.

State machine per request::

    IDLE --(dispatch)--> THINKING --(first byte)--> STREAMING --(end)--> IDLE
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Optional

from ..messages.models import Message, placeholder_message

LOGGER = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]

THINKING = "is_thinking"
STREAMING = "is_streaming"
CURRENT_MESSAGE = "current_message"


class StreamPhase(str, enum.Enum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"


class StreamingStateStore:
    """Injectable container for the thinking/streaming flags and the live message.

    Setting one flag to True clears the other first, so the two are never
    true together. Listeners are notified synchronously after every change
    with ``(field_name, new_value)``. There is no locking: the store is only
    written from one event loop, between suspension points.
    """

    def __init__(self, *, chat_id: Optional[str] = None, logger: Optional[logging.Logger] = None) -> None:
        self.chat_id = chat_id
        self.logger = logger or LOGGER
        self._is_thinking = False
        self._is_streaming = False
        self._current_message = placeholder_message(chat_id)
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def is_thinking(self) -> bool:
        return self._is_thinking

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    @property
    def current_message(self) -> Message:
        return self._current_message.model_copy()

    @property
    def phase(self) -> StreamPhase:
        if self._is_thinking:
            return StreamPhase.THINKING
        if self._is_streaming:
            return StreamPhase.STREAMING
        return StreamPhase.IDLE

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            THINKING: self._is_thinking,
            STREAMING: self._is_streaming,
            CURRENT_MESSAGE: self._current_message.model_dump(),
        }

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def _notify(self, field: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(field, value)
            except Exception:
                self.logger.exception("Streaming state listener failed for %s", field)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    # Both flags are written before listeners run, so no listener observes
    # the hand-over between THINKING and STREAMING as a momentary IDLE.

    def set_thinking(self, value: bool) -> None:
        value = bool(value)
        changes: list[tuple[str, bool]] = []
        if value and self._is_streaming:
            self._is_streaming = False
            changes.append((STREAMING, False))
        if value != self._is_thinking:
            self._is_thinking = value
            changes.append((THINKING, value))
        for field, changed in changes:
            self._notify(field, changed)

    def set_streaming(self, value: bool) -> None:
        value = bool(value)
        changes: list[tuple[str, bool]] = []
        if value and self._is_thinking:
            self._is_thinking = False
            changes.append((THINKING, False))
        if value != self._is_streaming:
            self._is_streaming = value
            changes.append((STREAMING, value))
        for field, changed in changes:
            self._notify(field, changed)

    def set_current_message_content(self, content: str) -> None:
        """Replace the live message content with the full accumulated text."""
        self._current_message = self._current_message.model_copy(update={"content": content})
        self._notify(CURRENT_MESSAGE, self.current_message)

    def reset_current_message(self) -> None:
        """Swap in a new placeholder (new id, current timestamp, empty content).

        Callers pair this with ``set_streaming(False)``; the store does not.
        """
        self._current_message = placeholder_message(self.chat_id or self._current_message.chat_id)
        self._notify(CURRENT_MESSAGE, self.current_message)

    def reset(self) -> None:
        """Return to IDLE in one call; used by error paths."""
        self.set_thinking(False)
        self.set_streaming(False)
        self.reset_current_message()


def attach_debug_logger(store: StreamingStateStore, logger: Optional[logging.Logger] = None) -> Callable[[], None]:
    """Log every store change at DEBUG level. Returns the unsubscribe callable."""
    log = logger or LOGGER

    def _log_change(field: str, value: Any) -> None:
        if isinstance(value, Message):
            log.debug("Streaming state %s -> id=%s content_chars=%d", field, value.id, len(value.content))
        else:
            log.debug("Streaming state %s -> %r", field, value)

    return store.subscribe(_log_change)

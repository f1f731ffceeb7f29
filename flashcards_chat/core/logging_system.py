"""Logging system with per-request log capture.

This module handles all logging-related functionality:
- SessionLogger: request-scoped logging context for streamed chat requests
- Structured events built from LogRecords and kept in bounded buffers
- Explicit cleanup of stale request buffers

The SessionLogger uses contextvars to track request_id and chat_id, so every
log line emitted while a stream is running can be traced back to it.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Deque, Dict, Iterator, Optional

_EVENT_TYPE_PREFIXES = (
    ("Raw SSE event", "stream.event"),
    ("Decoded payload", "stream.event"),
    ("Stream ", "stream.lifecycle"),
    ("Streaming state ", "stream.state"),
    ("Mutation ", "persistence"),
)


class _RequestContextFilter(logging.Filter):
    """Stamps records with the bound request, chat and console level."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = SessionLogger.request_id.get()
        record.request_id = request_id
        record.chat_id = SessionLogger.chat_id.get() or "-"
        record.session_log_level = SessionLogger.log_level.get()
        if request_id:
            SessionLogger.touch(request_id)
        return True


class _SessionHandler(logging.Handler):
    """Routes records into SessionLogger (console echo plus request buffer)."""

    def emit(self, record: logging.LogRecord) -> None:
        SessionLogger.process_record(record)


class SessionLogger:
    """Per-request logger that writes to stdout and an in-memory log buffer.

    The logger tracks identifiers via contextvars:
    - request_id: Per-stream unique id used to key the in-memory log buffer.
    - chat_id:    Chat the stream belongs to.
    - log_level:  Minimum level echoed to the console for this request.

    A request's buffer lives until the client finishes the request and calls
    ``discard``. ``cleanup`` prunes buffers left behind by callers that bind
    request ids without discarding them.
    """

    request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
    chat_id: ContextVar[Optional[str]] = ContextVar("chat_id", default=None)
    log_level: ContextVar[int] = ContextVar("log_level", default=logging.INFO)
    max_lines: int = 2000
    logs: Dict[str, Deque[dict[str, Any]]] = {}
    _session_last_seen: Dict[str, float] = {}
    _state_lock = threading.Lock()
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(chat_id)s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @staticmethod
    def _classify_event_type(message: str) -> str:
        text = (message or "").lstrip()
        for prefix, event_type in _EVENT_TYPE_PREFIXES:
            if text.startswith(prefix):
                return event_type
        return "client"

    @classmethod
    def _build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        """Return a structured log event extracted from a LogRecord."""
        message = record.getMessage()
        event: dict[str, Any] = {
            "created": record.created,
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None),
            "chat_id": getattr(record, "chat_id", None),
            "event_type": cls._classify_event_type(message),
            "func": record.funcName,
            "lineno": record.lineno,
            "message": message,
        }
        if record.exc_info:
            event["exception"] = {"text": "".join(traceback.format_exception(*record.exc_info))}
        return event

    @classmethod
    def get_logger(cls, name: str = __name__) -> logging.Logger:
        """Return logger ``name`` wired to the current request context.

        Records go to stdout (subject to the bound ``log_level``) and to the
        in-memory buffer of the bound ``request_id``. They still propagate
        to the root logger.
        """
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.filters.clear()
        logger.setLevel(logging.DEBUG)
        logger.addFilter(_RequestContextFilter())
        logger.addHandler(_SessionHandler())
        logger.propagate = True
        return logger

    @classmethod
    def set_max_lines(cls, value: int) -> None:
        """Set the maximum in-memory lines retained per request (best effort)."""
        try:
            lines = int(value)
        except (TypeError, ValueError):
            return
        cls.max_lines = max(100, min(200000, lines))

    @classmethod
    def touch(cls, request_id: str) -> None:
        with cls._state_lock:
            cls._session_last_seen[request_id] = time.time()

    @classmethod
    def process_record(cls, record: logging.LogRecord) -> None:
        # Records propagated from unwired child loggers skip the context filter.
        if not hasattr(record, "chat_id"):
            record.chat_id = "-"
        if record.levelno >= int(getattr(record, "session_log_level", logging.INFO)):
            try:
                sys.stdout.write(cls._console_formatter.format(record) + "\n")
                sys.stdout.flush()
            except (OSError, ValueError):
                pass
        request_id = getattr(record, "request_id", None)
        if not request_id:
            return
        event = cls._build_event(record)
        with cls._state_lock:
            buffer = cls.logs.get(request_id)
            if buffer is None or buffer.maxlen != cls.max_lines:
                buffer = deque(buffer or (), maxlen=cls.max_lines)
                cls.logs[request_id] = buffer
            buffer.append(event)
            cls._session_last_seen[request_id] = time.time()

    @classmethod
    def events_for(cls, request_id: str) -> list[dict[str, Any]]:
        with cls._state_lock:
            return list(cls.logs.get(request_id) or ())

    @classmethod
    def events_for_chat(cls, chat_id: str) -> list[dict[str, Any]]:
        """Return every buffered event of ``chat_id`` across requests, oldest first."""
        with cls._state_lock:
            events = [event for buffer in cls.logs.values() for event in buffer if event.get("chat_id") == chat_id]
        return sorted(events, key=lambda event: event["created"])

    @classmethod
    @contextmanager
    def bind(
        cls,
        *,
        request_id: str,
        chat_id: Optional[str] = None,
        level: int | str = logging.INFO,
    ) -> Iterator[None]:
        """Bind request context for the duration of a ``with`` block."""
        if isinstance(level, str):
            resolved = logging.getLevelName(level.upper())
            level = resolved if isinstance(resolved, int) else logging.INFO
        request_token = cls.request_id.set(request_id)
        chat_token = cls.chat_id.set(chat_id)
        level_token = cls.log_level.set(level)
        try:
            yield
        finally:
            cls.log_level.reset(level_token)
            cls.chat_id.reset(chat_token)
            cls.request_id.reset(request_token)

    @classmethod
    def cleanup(cls, max_age_seconds: float = 3600) -> None:
        """Remove request logs not written to for ``max_age_seconds``."""
        cutoff = time.time() - max_age_seconds
        with cls._state_lock:
            for rid in [rid for rid, seen in cls._session_last_seen.items() if seen < cutoff]:
                cls.logs.pop(rid, None)
                cls._session_last_seen.pop(rid, None)

    @classmethod
    def discard(cls, request_id: str) -> None:
        """Drop the buffer of a finished request."""
        with cls._state_lock:
            cls.logs.pop(request_id, None)
            cls._session_last_seen.pop(request_id, None)

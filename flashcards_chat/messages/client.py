"""Chat message requests with streamed assistant replies.

``MessagesClient`` drives one request at a time through the streaming
state machine:

1. persist the user message (new message flow only)
2. mark the store THINKING and dispatch the AI request
3. on the first response bytes switch to STREAMING
4. push every accumulated fragment into the store's live message
5. at end of stream save the final text and return the store to IDLE

Any failure along the way produces an error toast and returns the store to
IDLE, so the UI never keeps a "thinking" indicator for a dead request.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from ..core.config import CHAT_ASSISTANTS_PATH, MESSAGES_PATH, Valves, create_http_session
from ..core.errors import MessageRequestError, StatusMessages
from ..core.logging_system import SessionLogger
from ..core.timing_logger import (
    clear_timing_context,
    clear_timing_events,
    ensure_timing_file_configured,
    request_latency,
    set_timing_context,
    timed,
    timing_mark,
)
from ..streaming.constants import ERROR_PAYLOAD_PREFIX
from ..streaming.event_emitter import NotificationEmitter
from ..streaming.sse_parser import SSEParser
from ..streaming.state_store import StreamingStateStore
from .models import CreateMessageRequest, UpdateMessageRequest, _RequestBody, new_id
from .persistence import MessagePersistence

LOGGER = SessionLogger.get_logger(__name__)

# One stream at a time per store: a second request waits for the first.
_STREAM_LOCKS: "weakref.WeakKeyDictionary[StreamingStateStore, asyncio.Lock]" = weakref.WeakKeyDictionary()


def _stream_lock(store: StreamingStateStore) -> asyncio.Lock:
    lock = _STREAM_LOCKS.get(store)
    if lock is None:
        lock = asyncio.Lock()
        _STREAM_LOCKS[store] = lock
    return lock


class MessagesClient:
    """Creates and edits chat messages and streams the assistant's reply."""

    def __init__(
        self,
        chat_id: str,
        *,
        valves: Valves,
        store: StreamingStateStore,
        persistence: MessagePersistence,
        notifier: Optional[NotificationEmitter] = None,
        session: Optional[aiohttp.ClientSession] = None,
        parser: Optional[SSEParser] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.chat_id = chat_id
        self.valves = valves
        self.store = store
        self.persistence = persistence
        self.logger = logger or LOGGER
        self.notifier = notifier or NotificationEmitter(None, self.logger)
        self.parser = parser or SSEParser.from_valves(valves, logger=self.logger)
        self._session = session
        self._owns_session = session is None
        SessionLogger.set_max_lines(valves.SESSION_LOG_MAX_LINES)

    async def __aenter__(self) -> "MessagesClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = create_http_session(self.valves)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def add(self, content: str) -> Optional[str]:
        """Send a new user message and stream the assistant's reply.

        Returns:
            The assistant's full reply, or None when the request failed.
        """

        async def _run() -> str:
            user_message_id = await self.persistence.create(content=content, chat_id=self.chat_id, role="user")
            return await self._stream(
                "POST",
                CHAT_ASSISTANTS_PATH,
                CreateMessageRequest(message_id=user_message_id),
                save=self._save_new_reply,
            )

        return await self._run_request(_run, failure_title=StatusMessages.CREATE_FAILED)

    async def edit(
        self,
        message_id: str,
        content: str,
        *,
        assistant_message_id: Optional[str] = None,
    ) -> Optional[str]:
        """Edit a user message and regenerate the reply that follows it.

        When ``assistant_message_id`` is given the regenerated text replaces
        that message; otherwise it is saved as a new assistant message.
        """

        async def _save(final_text: str) -> None:
            if assistant_message_id:
                await self.persistence.update(message_id=assistant_message_id, content=final_text)
            else:
                await self._save_new_reply(final_text)

        async def _run() -> str:
            final_text = await self._stream(
                "PATCH",
                MESSAGES_PATH,
                UpdateMessageRequest(content=content, message_id=message_id),
                save=_save,
            )
            await self.notifier.notify_success(StatusMessages.UPDATE_SUCCEEDED)
            return final_text

        return await self._run_request(_run, failure_title=StatusMessages.UPDATE_FAILED)

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def _run_request(
        self,
        run: Callable[[], Awaitable[str]],
        *,
        failure_title: str,
    ) -> Optional[str]:
        request_id = new_id()
        async with _stream_lock(self.store):
            with SessionLogger.bind(request_id=request_id, chat_id=self.chat_id, level=self.valves.LOG_LEVEL):
                timing_enabled = self.valves.ENABLE_TIMING_LOG and ensure_timing_file_configured(
                    self.valves.TIMING_LOG_FILE
                )
                set_timing_context(request_id, timing_enabled)
                try:
                    return await run()
                except asyncio.CancelledError:
                    self.store.reset()
                    raise
                except Exception as exc:
                    self.logger.error("Stream request failed: %s", exc, exc_info=True)
                    await self.notifier.notify_error(failure_title, exc)
                    self.store.reset()
                    return None
                finally:
                    if timing_enabled:
                        latency = request_latency(request_id)
                        self.logger.debug(
                            "Stream timings: first_chunk=%s ms total=%s ms",
                            latency["first_chunk_ms"],
                            latency["total_ms"],
                        )
                        clear_timing_events(request_id)
                    clear_timing_context()
                    SessionLogger.discard(request_id)

    @timed
    async def _stream(
        self,
        method: str,
        path: str,
        body: _RequestBody,
        *,
        save: Callable[[str], Awaitable[None]],
    ) -> str:
        url = self.valves.site_endpoint(path)
        session = self._get_session()

        async def _on_complete(final_text: str) -> None:
            self.logger.debug("Stream complete (%d chars)", len(final_text))
            await save(final_text)
            self.store.reset()

        self.store.set_thinking(True)
        timing_mark("http_request_start")
        self.logger.debug("Stream request %s %s", method, url)
        async with session.request(method, url, json=body.to_payload(), headers=self.valves.auth_headers()) as resp:
            if not 200 <= resp.status < 300:
                raise MessageRequestError(status=resp.status, reason=resp.reason, body=await _safe_text(resp))
            return await self.parser.consume(
                resp,
                on_chunk=self._on_chunk,
                on_first_chunk=self._on_first_chunk,
                on_complete=_on_complete,
            )

    def _on_first_chunk(self) -> None:
        self.logger.debug("Stream first bytes received")
        self.store.set_streaming(True)

    def _on_chunk(self, payload: str, accumulated: str) -> None:
        if payload.startswith(ERROR_PAYLOAD_PREFIX):
            self.logger.warning("Stream carried an upstream error: %s", payload[len(ERROR_PAYLOAD_PREFIX):])
        self.store.set_current_message_content(accumulated)

    async def _save_new_reply(self, final_text: str) -> None:
        if not final_text:
            self.logger.warning("Stream ended without content; nothing to save")
            return
        await self.persistence.create(content=final_text, chat_id=self.chat_id, role="assistant")


async def _safe_text(resp: Any) -> str:
    try:
        return await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        return ""

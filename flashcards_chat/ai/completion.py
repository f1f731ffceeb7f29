"""Writing-assistant completions (grammar fixes, rewrites, tone changes).

The completion endpoint streams a line protocol rather than event blocks;
see ``streaming.data_stream_parser``. Unlike chat replies these results are
not persisted and do not touch the shared streaming store: the client keeps
its own ``completion`` / ``is_loading`` / ``error`` fields, observable through
``subscribe`` the same way as the store.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Optional

import aiohttp

from ..core.config import AI_COMPLETION_PATH, Valves, create_http_session
from ..core.errors import MessageRequestError, StatusMessages, StreamUnavailableError
from ..core.timing_logger import timed
from ..messages.models import CompletionRequest
from ..streaming.data_stream_parser import DataStreamDecoder

LOGGER = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


class Task(str, enum.Enum):
    GRAMMAR = "grammar"
    IMPROVE = "improve"
    SHORTEN = "shorten"
    LENGTHEN = "lengthen"
    SIMPLIFY = "simplify"
    PROFESSIONAL = "professional"


TASK_DESCRIPTIONS: dict[Task, str] = {
    Task.GRAMMAR: "Fix spelling & grammar",
    Task.IMPROVE: "Improve writing",
    Task.SHORTEN: "Make shorter",
    Task.LENGTHEN: "Make longer",
    Task.SIMPLIFY: "Simplify language",
    Task.PROFESSIONAL: "Change to professional tone",
}


class AICompletionClient:
    """Requests a rewrite of ``prompt`` and exposes the streamed result."""

    def __init__(
        self,
        valves: Valves,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.valves = valves
        self.logger = logger or LOGGER
        self._session = session
        self._owns_session = session is None
        self.completion = ""
        self.is_loading = False
        self.error: Optional[Exception] = None
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(field, value)`` after every change; returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def _set(self, field: str, value: Any) -> None:
        if getattr(self, field) == value:
            return
        setattr(self, field, value)
        for listener in list(self._listeners):
            try:
                listener(field, value)
            except Exception:
                self.logger.exception("Completion listener failed for %s", field)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = create_http_session(self.valves)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @timed
    async def generate_completion(self, prompt: str, task: Task | str) -> str:
        """Stream a completion for ``prompt``.

        Failures are recorded in ``error`` rather than raised; the partial
        completion received so far is kept.

        Returns:
            The completion text (possibly partial on failure).
        """
        self._set("is_loading", True)
        self._set("error", None)
        self._set("completion", "")
        url = self.valves.site_endpoint(AI_COMPLETION_PATH)

        try:
            task_value = Task(task).value
            body = CompletionRequest(prompt=prompt, task=task_value).to_payload()
            self.logger.debug("Starting completion request to %s (task=%s)", url, task_value)
            session = self._get_session()
            async with session.post(url, json=body, headers=self.valves.auth_headers()) as resp:
                self.logger.debug("Completion response status: %s", resp.status)
                if not 200 <= resp.status < 300:
                    raise MessageRequestError(
                        status=resp.status,
                        reason=resp.reason,
                        message=f"HTTP error! status: {resp.status}",
                    )
                content = getattr(resp, "content", None)
                if content is None:
                    raise StreamUnavailableError()
                decoder = DataStreamDecoder(logger=self.logger)
                async for chunk in content.iter_chunked(self.valves.STREAM_CHUNK_BYTES):
                    if decoder.feed(chunk):
                        self._set("completion", decoder.accumulated)
                if decoder.finish():
                    self._set("completion", decoder.accumulated)
        except Exception as exc:
            self.logger.error("Error in generate_completion: %s", exc)
            self._set("error", exc if str(exc) else RuntimeError(StatusMessages.COMPLETION_FAILED))
        finally:
            self._set("is_loading", False)
        return self.completion

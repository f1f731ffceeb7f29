"""Message persistence through the backend's mutation API.

The streaming core never saves anything itself. Once a stream completes the
message client calls a ``MessagePersistence`` implementation to store the
final text. ``ConvexMutationClient`` is the production implementation; tests
substitute an in-memory fake.

Transport failures are retried here with Tenacity. Errors reported by the
backend itself (validation, auth) are raised immediately.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..core.config import (
    CREATE_MESSAGE_MUTATION,
    MUTATION_API_PATH,
    UPDATE_MESSAGE_MUTATION,
    Valves,
    create_http_session,
)
from ..core.errors import MutationError, _is_retryable_transport_error
from ..core.logging_system import SessionLogger
from ..core.timing_logger import timed
from .models import MessageRole

LOGGER = SessionLogger.get_logger(__name__)


class MessagePersistence(Protocol):
    async def create(self, *, content: str, chat_id: str, role: MessageRole) -> str:
        ...

    async def update(self, *, message_id: str, content: str) -> None:
        ...


class ConvexMutationClient:
    """Runs message mutations over HTTP (``POST {CONVEX_URL}/api/mutation``)."""

    def __init__(
        self,
        valves: Valves,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        wait: Any = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.valves = valves
        self.logger = logger or LOGGER
        self._session = session
        self._owns_session = session is None
        self._wait = wait if wait is not None else wait_exponential(multiplier=0.5, min=0.5, max=4)

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
    async def run_mutation(self, path: str, args: dict[str, Any]) -> Any:
        """Execute mutation ``path`` with ``args`` and return its value.

        Raises:
            MutationError: The backend rejected the mutation or answered
                with an unexpected body.
            aiohttp.ClientError: Transport failure after the last attempt.
        """
        url = f"{self.valves.CONVEX_URL}{MUTATION_API_PATH}"
        payload = {"path": path, "args": args, "format": "json"}
        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.valves.PERSIST_MAX_RETRIES),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable_transport_error),
            reraise=True,
        )
        async for attempt in retryer:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    self.logger.warning("Mutation %s retry attempt %d", path, attempt_number)
                session = self._get_session()
                async with session.post(url, json=payload, headers=self.valves.auth_headers()) as resp:
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = None
                    if isinstance(data, dict) and data.get("status") == "success":
                        self.logger.debug("Mutation %s succeeded", path)
                        return data.get("value")
                    if isinstance(data, dict) and data.get("status") == "error":
                        raise MutationError(path, data.get("errorMessage"), data.get("errorData"))
                    resp.raise_for_status()
                    raise MutationError(path, f"Unexpected mutation response ({resp.status})")
        raise MutationError(path)  # pragma: no cover - AsyncRetrying reraises

    async def create(self, *, content: str, chat_id: str, role: MessageRole) -> str:
        value = await self.run_mutation(
            CREATE_MESSAGE_MUTATION,
            {"content": content, "chatId": chat_id, "role": role},
        )
        return str(value)

    async def update(self, *, message_id: str, content: str) -> None:
        await self.run_mutation(
            UPDATE_MESSAGE_MUTATION,
            {"content": content, "messageId": message_id},
        )

"""Shared fixtures for the flashcards chat client tests."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from flashcards_chat.core.config import Valves
from flashcards_chat.core.timing_logger import clear_timing_context, close_timing_file
from flashcards_chat.streaming.event_emitter import NotificationEmitter
from flashcards_chat.streaming.state_store import StreamingStateStore

CONVEX_URL = "https://happy-otter-123.convex.cloud"
SITE_URL = "https://happy-otter-123.convex.site"


class FakePersistence:
    """In-memory MessagePersistence recording every write."""

    def __init__(self, *, fail_on: str | None = None) -> None:
        self.created: list[dict[str, Any]] = []
        self.updated: list[dict[str, Any]] = []
        self._fail_on = fail_on

    async def create(self, *, content: str, chat_id: str, role: str) -> str:
        if self._fail_on == f"create:{role}":
            raise RuntimeError(f"could not save {role} message")
        message_id = f"msg-{len(self.created) + 1}"
        self.created.append({"id": message_id, "content": content, "chat_id": chat_id, "role": role})
        return message_id

    async def update(self, *, message_id: str, content: str) -> None:
        if self._fail_on == "update":
            raise RuntimeError("could not update message")
        self.updated.append({"message_id": message_id, "content": content})


@pytest.fixture(autouse=True)
def _reset_timing_state():
    yield
    clear_timing_context()
    close_timing_file()


@pytest.fixture
def valves() -> Valves:
    return Valves(CONVEX_URL=CONVEX_URL, AUTH_TOKEN="test-token", PERSIST_MAX_RETRIES=3)


@pytest.fixture
def store() -> StreamingStateStore:
    return StreamingStateStore(chat_id="chat-1")


@pytest.fixture
def emitted() -> list[dict[str, Any]]:
    return []


@pytest.fixture
def notifier(emitted) -> NotificationEmitter:
    async def _emitter(event: dict[str, Any]) -> None:
        emitted.append(event)

    return NotificationEmitter(_emitter)


@pytest.fixture
def make_persistence() -> Callable[..., FakePersistence]:
    return FakePersistence


@pytest.fixture
def persistence(make_persistence) -> FakePersistence:
    return make_persistence()


@pytest.fixture
def phase_log(store) -> list[str]:
    """Record the store phase after every change, collapsing repeats."""
    phases: list[str] = []

    def _listener(_field: str, _value: Any) -> None:
        phase = store.phase.value
        if not phases or phases[-1] != phase:
            phases.append(phase)

    store.subscribe(_listener)
    return phases

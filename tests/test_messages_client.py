"""End-to-end tests for the chat request lifecycle.

HTTP is mocked with aioresponses where a canned body is enough, and with a
hand-written fake session where a test needs to control the stream itself
(mid-stream failures, a body that never ends).
"""
# pyright: reportArgumentType=false

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, cast

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from flashcards_chat.core.config import Valves
from flashcards_chat.core.logging_system import SessionLogger
from flashcards_chat.messages.client import MessagesClient
from flashcards_chat.streaming.state_store import CURRENT_MESSAGE

CONVEX_URL = "https://happy-otter-123.convex.cloud"
SITE_URL = "https://happy-otter-123.convex.site"
ASSISTANTS_URL = f"{SITE_URL}/ai/chats/assistants"
MESSAGES_URL = f"{SITE_URL}/messages"


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

class _FakeContent:
    def __init__(
        self,
        chunks: list[bytes],
        *,
        raise_after: int | None = None,
        hang_after: int | None = None,
    ) -> None:
        self._chunks = chunks
        self._raise_after = raise_after
        self._hang_after = hang_after

    async def iter_chunked(self, _size: int):
        for idx, chunk in enumerate(self._chunks):
            if self._raise_after is not None and idx >= self._raise_after:
                raise aiohttp.ClientPayloadError("Simulated connection drop")
            if self._hang_after is not None and idx >= self._hang_after:
                await asyncio.Event().wait()
            await asyncio.sleep(0)
            yield chunk


class _FakeResponse:
    def __init__(self, content: _FakeContent | None, *, status: int = 200) -> None:
        self.status = status
        self.reason = "OK"
        self.content = content

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _FakeSession:
    """Fake aiohttp ClientSession returning a fixed response."""

    closed = False

    def __init__(self, response: _FakeResponse) -> None:
        self._response = response
        self.calls: list[tuple[str, str, dict | None]] = []

    def request(self, method: str, url: str, json=None, headers=None):
        self.calls.append((method, url, json))
        return self._response


def _content_log(store) -> list[str]:
    contents: list[str] = []

    def _listener(field: str, value: Any) -> None:
        if field == CURRENT_MESSAGE:
            contents.append(value.content)

    store.subscribe(_listener)
    return contents


def _request_kwargs(mock_http: aioresponses, method: str, url: str, index: int = 0) -> dict[str, Any]:
    return mock_http.requests[(method, URL(url))][index].kwargs


def _client(valves, store, persistence, notifier, **kwargs) -> MessagesClient:
    return MessagesClient("chat-1", valves=valves, store=store, persistence=persistence, notifier=notifier, **kwargs)


# -----------------------------------------------------------------------------
# New message flow
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_add_streams_reply_and_returns_store_to_idle(valves, store, persistence, notifier, emitted, phase_log):
    contents = _content_log(store)
    placeholder_id = store.current_message.id

    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=200, body="data: Hel\n\ndata: lo\n\n")
        async with _client(valves, store, persistence, notifier) as client:
            result = await client.add("Hi there")

        kwargs = _request_kwargs(mock_http, "POST", ASSISTANTS_URL)

    assert result == "Hello"
    assert phase_log == ["thinking", "streaming", "idle"]
    assert contents == ["Hel", "Hello", ""]
    assert persistence.created == [
        {"id": "msg-1", "content": "Hi there", "chat_id": "chat-1", "role": "user"},
        {"id": "msg-2", "content": "Hello", "chat_id": "chat-1", "role": "assistant"},
    ]
    assert kwargs["json"] == {"messageId": "msg-1"}
    assert kwargs["headers"]["Authorization"] == "Bearer test-token"
    assert store.current_message.id != placeholder_id
    assert store.current_message.content == ""
    assert emitted == []


@pytest.mark.asyncio
async def test_add_with_error_status_reports_and_never_streams(valves, store, persistence, notifier, emitted, phase_log):
    contents = _content_log(store)

    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=500, body="upstream exploded")
        async with _client(valves, store, persistence, notifier) as client:
            result = await client.add("Hi there")

    assert result is None
    assert phase_log == ["thinking", "idle"]
    assert contents == [""]
    assert store.is_thinking is False
    assert [m["role"] for m in persistence.created] == ["user"]
    assert emitted == [
        {
            "type": "notification",
            "data": {"type": "error", "content": "Error creating message", "description": "Failed to create message"},
        }
    ]


@pytest.mark.asyncio
async def test_add_with_empty_body_skips_saving(valves, store, persistence, notifier, emitted, phase_log, caplog):
    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=200, body="")
        async with _client(valves, store, persistence, notifier) as client:
            with caplog.at_level(logging.WARNING, logger="flashcards_chat.messages.client"):
                result = await client.add("Hi there")

    assert result == ""
    assert phase_log == ["thinking", "idle"]
    assert [m["role"] for m in persistence.created] == ["user"]
    assert "Stream ended without content" in caplog.text
    assert emitted == []


@pytest.mark.asyncio
async def test_add_keeps_upstream_error_payload_verbatim(valves, store, persistence, notifier, caplog):
    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=200, body="data: [ERROR] : model overloaded\n\n")
        async with _client(valves, store, persistence, notifier) as client:
            with caplog.at_level(logging.WARNING, logger="flashcards_chat.messages.client"):
                result = await client.add("Hi there")

    assert result == "[ERROR] : model overloaded"
    assert persistence.created[-1]["content"] == "[ERROR] : model overloaded"
    assert "Stream carried an upstream error: model overloaded" in caplog.text


@pytest.mark.asyncio
async def test_user_message_failure_skips_request(valves, store, make_persistence, notifier, emitted, phase_log):
    persistence = make_persistence(fail_on="create:user")

    with aioresponses() as mock_http:
        async with _client(valves, store, persistence, notifier) as client:
            result = await client.add("Hi there")
        assert mock_http.requests == {}

    assert result is None
    assert "thinking" not in phase_log
    assert emitted[0]["data"]["description"] == "could not save user message"


@pytest.mark.asyncio
async def test_assistant_save_failure_resets_store(valves, store, make_persistence, notifier, emitted):
    persistence = make_persistence(fail_on="create:assistant")

    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=200, body="data: Hello\n\n")
        async with _client(valves, store, persistence, notifier) as client:
            result = await client.add("Hi there")

    assert result is None
    assert store.is_streaming is False
    assert store.current_message.content == ""
    assert emitted[0]["data"] == {
        "type": "error",
        "content": "Error creating message",
        "description": "could not save assistant message",
    }


# -----------------------------------------------------------------------------
# Edit / regenerate flow
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_edit_regenerates_into_existing_assistant_message(valves, store, persistence, notifier, emitted, phase_log):
    with aioresponses() as mock_http:
        mock_http.patch(MESSAGES_URL, status=200, body="data: New\n\ndata:  answer\n\n")
        async with _client(valves, store, persistence, notifier) as client:
            result = await client.edit("msg-user", "edited question", assistant_message_id="msg-assistant")

        kwargs = _request_kwargs(mock_http, "PATCH", MESSAGES_URL)

    assert result == "New answer"
    assert kwargs["json"] == {"content": "edited question", "messageId": "msg-user"}
    assert persistence.updated == [{"message_id": "msg-assistant", "content": "New answer"}]
    assert persistence.created == []
    assert phase_log == ["thinking", "streaming", "idle"]
    assert emitted == [
        {"type": "notification", "data": {"type": "success", "content": "Message updated successfully"}}
    ]


@pytest.mark.asyncio
async def test_edit_without_assistant_message_creates_one(valves, store, persistence, notifier):
    with aioresponses() as mock_http:
        mock_http.patch(MESSAGES_URL, status=200, body="data: Reply\n\n")
        async with _client(valves, store, persistence, notifier) as client:
            await client.edit("msg-user", "edited")

    assert persistence.created == [{"id": "msg-1", "content": "Reply", "chat_id": "chat-1", "role": "assistant"}]


@pytest.mark.asyncio
async def test_edit_with_error_status_reports_update_failure(valves, store, persistence, notifier, emitted):
    with aioresponses() as mock_http:
        mock_http.patch(MESSAGES_URL, status=401, body="unauthorized")
        async with _client(valves, store, persistence, notifier) as client:
            result = await client.edit("msg-user", "edited")

    assert result is None
    assert store.is_thinking is False
    assert emitted == [
        {
            "type": "notification",
            "data": {"type": "error", "content": "Error updating message", "description": "Failed to create message"},
        }
    ]


# -----------------------------------------------------------------------------
# Transport failures and concurrency
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mid_stream_drop_reports_and_resets(valves, store, persistence, notifier, emitted, phase_log):
    response = _FakeResponse(_FakeContent([b"data: par", b"tial\n\n", b"data: more\n\n"], raise_after=2))
    session = _FakeSession(response)
    client = _client(valves, store, persistence, notifier, session=cast(aiohttp.ClientSession, session))

    result = await client.add("Hi there")

    assert result is None
    assert phase_log == ["thinking", "streaming", "idle"]
    assert store.current_message.content == ""
    assert [m["role"] for m in persistence.created] == ["user"]
    assert emitted[0]["data"]["content"] == "Error creating message"
    assert "Simulated connection drop" in emitted[0]["data"]["description"]
    assert session.calls[0][:2] == ("POST", ASSISTANTS_URL)


@pytest.mark.asyncio
async def test_unreadable_body_reports_and_resets(valves, store, persistence, notifier, emitted, phase_log):
    session = _FakeSession(_FakeResponse(None))
    client = _client(valves, store, persistence, notifier, session=cast(aiohttp.ClientSession, session))

    result = await client.add("Hi there")

    assert result is None
    assert phase_log == ["thinking", "idle"]
    assert emitted[0]["data"]["description"] == "No reader available"


@pytest.mark.asyncio
async def test_cancellation_resets_store(valves, store, persistence, notifier, emitted):
    response = _FakeResponse(_FakeContent([b"data: A\n\n", b"data: B\n\n"], hang_after=1))
    client = _client(valves, store, persistence, notifier, session=cast(aiohttp.ClientSession, _FakeSession(response)))

    task = asyncio.create_task(client.add("Hi there"))
    for _ in range(100):
        if store.current_message.content == "A":
            break
        await asyncio.sleep(0)
    assert store.is_streaming is True

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert store.is_streaming is False
    assert store.current_message.content == ""
    assert emitted == []


@pytest.mark.asyncio
async def test_concurrent_requests_on_one_store_run_one_at_a_time(valves, store, persistence, notifier, phase_log):
    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=200, body="data: first\n\n")
        mock_http.post(ASSISTANTS_URL, status=200, body="data: second\n\n")
        async with _client(valves, store, persistence, notifier) as client:
            results = await asyncio.gather(client.add("one"), client.add("two"))

    assert results == ["first", "second"]
    assert phase_log == ["thinking", "streaming", "idle", "thinking", "streaming", "idle"]


@pytest.mark.asyncio
async def test_timing_log_records_request_phases(tmp_path, store, persistence, notifier):
    timing_file = tmp_path / "timing.jsonl"
    valves = Valves(CONVEX_URL=CONVEX_URL, ENABLE_TIMING_LOG=True, TIMING_LOG_FILE=str(timing_file))

    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=200, body="data: Hello\n\n")
        async with _client(valves, store, persistence, notifier) as client:
            await client.add("Hi there")

    records = [json.loads(line) for line in timing_file.read_text(encoding="utf-8").splitlines()]
    labels = [record["label"] for record in records]
    assert "messages.client.MessagesClient._stream" in labels
    assert {"http_request_start", "stream_first_chunk", "stream_complete"} <= set(labels)
    assert len({record["request_id"] for record in records}) == 1


@pytest.mark.asyncio
async def test_finished_requests_release_their_log_buffers(valves, store, persistence, notifier):
    buffered_during_request: dict[str, int] = {}

    def _capture_buffer(field: str, _value: Any) -> None:
        request_id = SessionLogger.request_id.get()
        if request_id and field == CURRENT_MESSAGE:
            buffered_during_request[request_id] = len(SessionLogger.events_for(request_id))

    store.subscribe(_capture_buffer)

    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=200, body="data: ok\n\n", repeat=True)
        async with _client(valves, store, persistence, notifier) as client:
            for _ in range(25):
                assert await client.add("hi") == "ok"

    assert len(buffered_during_request) == 25
    assert all(count > 0 for count in buffered_during_request.values())
    assert not set(buffered_during_request) & set(SessionLogger.logs)


@pytest.mark.asyncio
async def test_failed_request_releases_its_log_buffer(valves, store, persistence, notifier):
    request_ids: list[str] = []
    store.subscribe(lambda _field, _value: request_ids.append(SessionLogger.request_id.get()))

    with aioresponses() as mock_http:
        mock_http.post(ASSISTANTS_URL, status=500, body="upstream exploded")
        async with _client(valves, store, persistence, notifier) as client:
            assert await client.add("hi") is None

    assert request_ids
    assert not set(request_ids) & set(SessionLogger.logs)

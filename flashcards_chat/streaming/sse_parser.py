"""Server-Sent Events (SSE) parsing.

This module turns a streamed HTTP body into text fragments:
- Incremental UTF-8 decoding across read boundaries
- Event splitting on blank lines (``\\n\\n``)
- ``data:`` payload extraction with the ``data: [DONE]`` stop marker
- Fragment accumulation, exposed as an async generator or as callbacks

The decoder keeps no reference to UI state; callers decide what to do with
each fragment.
"""

from __future__ import annotations

import codecs
import contextlib
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Optional, Union

from ..core.errors import StreamUnavailableError
from ..core.timing_logger import timing_mark
from .constants import DATA_PREFIX, DEFAULT_CHUNK_BYTES, DONE_LINE, EVENT_BOUNDARY

LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[str, str], Union[None, Awaitable[None]]]
CompleteCallback = Callable[[str], Union[None, Awaitable[None]]]
FirstChunkCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One decoded fragment and the accumulator right after it was appended."""

    payload: str
    accumulated: str


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


def parse_raw_event(raw_event: str) -> str:
    """Extract the payload of one event block.

    Lines starting with ``data: `` contribute their remainder. A line equal to
    ``data: [DONE]`` ends the event; nothing after it counts. Several data
    lines are joined with a newline, a single one is returned verbatim. Any
    other line (``event:``, ``id:``, ``retry:``, comments) is ignored.

    Returns:
        The payload, or ``""`` when the block carries no data line.
    """
    data_lines: list[str] = []
    for line in raw_event.split("\n"):
        if line == DONE_LINE:
            break
        if line.startswith(DATA_PREFIX):
            data_lines.append(line[len(DATA_PREFIX):])
    return "\n".join(data_lines)


class SSEDecoder:
    """Incremental decoder for one event-framed response body.

    Feed raw byte chunks in arrival order; each call returns the events the
    chunk completed. The result does not depend on where chunk boundaries
    fall, including inside a multi-byte character or inside the blank line
    separating two events.
    """

    def __init__(
        self,
        *,
        flush_trailing: bool = False,
        debug: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.flush_trailing = flush_trailing
        self.debug = debug
        self.logger = logger or LOGGER
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._accumulated = ""
        self._finished = False

    @property
    def accumulated(self) -> str:
        return self._accumulated

    @property
    def pending(self) -> str:
        """Decoded text not yet terminated by an event boundary."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        if self._finished:
            raise RuntimeError("SSEDecoder.feed() called after finish()")
        if not chunk:
            return []
        self._buffer += self._decoder.decode(bytes(chunk))
        return self._drain()

    def finish(self) -> list[StreamEvent]:
        """Flush the UTF-8 decoder and settle whatever is left in the buffer."""
        if self._finished:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        events = self._drain()
        if self._buffer:
            if self.flush_trailing:
                event = self._fold(self._buffer)
                if event is not None:
                    events.append(event)
            else:
                self.logger.debug(
                    "Dropping %d unterminated trailing characters at stream end",
                    len(self._buffer),
                )
            self._buffer = ""
        self._finished = True
        return events

    def _drain(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        buffer = self._buffer
        start = 0
        while True:
            boundary = buffer.find(EVENT_BOUNDARY, start)
            if boundary == -1:
                break
            raw_event = buffer[start:boundary]
            start = boundary + len(EVENT_BOUNDARY)
            event = self._fold(raw_event)
            if event is not None:
                events.append(event)
        if start:
            self._buffer = buffer[start:]
        return events

    def _fold(self, raw_event: str) -> Optional[StreamEvent]:
        if self.debug:
            self.logger.debug("Raw SSE event: %r", raw_event)
        payload = parse_raw_event(raw_event)
        if self.debug:
            self.logger.debug("Decoded payload: %s", json.dumps(payload, ensure_ascii=False))
        if not payload:
            return None
        self._accumulated += payload
        return StreamEvent(payload=payload, accumulated=self._accumulated)


class SSEParser:
    """Reads an HTTP response body and yields decoded stream events.

    The parser works with aiohttp responses (``response.content.iter_chunked``)
    and anything shaped like them. Reading the body is the only suspension
    point; parsing and callbacks between reads run synchronously. There is
    no timeout and no cancellation at this layer.
    """

    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_BYTES,
        flush_trailing: bool = False,
        debug: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the SSE parser.

        Args:
            chunk_size: Maximum bytes requested per read (default: 4096)
            flush_trailing: Parse an unterminated tail at stream end instead of dropping it
            debug: Log raw events and decoded payloads at DEBUG level
            logger: Logger instance for diagnostic output (default: module logger)
        """
        self.chunk_size = max(1, chunk_size)
        self.flush_trailing = flush_trailing
        self.debug = debug
        self.logger = logger or LOGGER

    @classmethod
    def from_valves(cls, valves: Any, *, logger: Optional[logging.Logger] = None) -> "SSEParser":
        return cls(
            chunk_size=valves.STREAM_CHUNK_BYTES,
            flush_trailing=valves.FLUSH_TRAILING_EVENT,
            debug=valves.DEBUG_STREAM,
            logger=logger,
        )

    def new_decoder(self) -> SSEDecoder:
        return SSEDecoder(flush_trailing=self.flush_trailing, debug=self.debug, logger=self.logger)

    def _open_reader(self, response: Any) -> AsyncIterator[bytes]:
        content = getattr(response, "content", None)
        iter_chunked = getattr(content, "iter_chunked", None)
        if content is None or not callable(iter_chunked):
            raise StreamUnavailableError()
        return iter_chunked(self.chunk_size)

    def iter_events(
        self,
        response: Any,
        *,
        on_first_chunk: Optional[FirstChunkCallback] = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Return a one-shot async generator of events from ``response``.

        Raises:
            StreamUnavailableError: Immediately, when the response has no
                readable body.
        """
        reader = self._open_reader(response)
        return self._iterate(reader, on_first_chunk)

    async def _iterate(
        self,
        reader: AsyncIterator[bytes],
        on_first_chunk: Optional[FirstChunkCallback],
    ) -> AsyncGenerator[StreamEvent, None]:
        decoder = self.new_decoder()
        seen_bytes = False
        async for chunk in reader:
            if not chunk:
                continue
            if not seen_bytes:
                seen_bytes = True
                timing_mark("stream_first_chunk")
                if on_first_chunk is not None:
                    await _maybe_await(on_first_chunk())
            for event in decoder.feed(chunk):
                yield event
        for event in decoder.finish():
            yield event
        timing_mark("stream_complete")

    async def consume(
        self,
        response: Any,
        *,
        on_chunk: ChunkCallback,
        on_complete: Optional[CompleteCallback] = None,
        on_first_chunk: Optional[FirstChunkCallback] = None,
    ) -> str:
        """Drive ``response`` to completion through callbacks.

        Args:
            response: Response whose body has already passed the status check
            on_chunk: Called as ``on_chunk(payload, accumulated)`` per fragment
            on_complete: Called once with the final accumulated text when the
                transport reports end of stream
            on_first_chunk: Called once when the first bytes arrive

        Returns:
            The final accumulated text.

        Raises:
            StreamUnavailableError: Before any callback, when there is no body.
        """
        events = self.iter_events(response, on_first_chunk=on_first_chunk)
        accumulated = ""
        async with contextlib.aclosing(events):
            async for event in events:
                accumulated = event.accumulated
                await _maybe_await(on_chunk(event.payload, event.accumulated))
        if on_complete is not None:
            await _maybe_await(on_complete(accumulated))
        return accumulated

"""Line-oriented data stream parsing for the completion endpoint.

The writing-assistant endpoint streams one frame per line:
- ``0:"text"``  JSON-encoded text delta
- ``f:{...}``   function call frame (ignored)
- ``e:{...}`` / ``d:{...}``  finish frames (ignored)

Lines may be split across reads, so the decoder buffers until a newline.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Literal, Optional

from .constants import (
    DATA_STREAM_FINISH_PREFIXES,
    DATA_STREAM_FUNCTION_PREFIX,
    DATA_STREAM_TEXT_PREFIX,
)

LOGGER = logging.getLogger(__name__)

FrameKind = Literal["text", "function", "finish", "unknown", "empty"]


@dataclass(frozen=True, slots=True)
class DataStreamFrame:
    kind: FrameKind
    text: str = ""
    raw: str = ""


def parse_data_stream_line(line: str, *, logger: Optional[logging.Logger] = None) -> DataStreamFrame:
    """Classify one protocol line; text frames carry their decoded delta."""
    log = logger or LOGGER
    if not line.strip():
        return DataStreamFrame(kind="empty", raw=line)
    if line.startswith(DATA_STREAM_TEXT_PREFIX):
        try:
            content = json.loads(line[len(DATA_STREAM_TEXT_PREFIX):])
        except json.JSONDecodeError as exc:
            log.debug("Skipping undecodable content frame: %s", exc)
            return DataStreamFrame(kind="unknown", raw=line)
        if not isinstance(content, str):
            log.debug("Skipping non-string content frame: %r", content)
            return DataStreamFrame(kind="unknown", raw=line)
        return DataStreamFrame(kind="text", text=content, raw=line)
    if line.startswith(DATA_STREAM_FUNCTION_PREFIX):
        return DataStreamFrame(kind="function", raw=line)
    if line.startswith(DATA_STREAM_FINISH_PREFIXES):
        return DataStreamFrame(kind="finish", raw=line)
    return DataStreamFrame(kind="unknown", raw=line)


class DataStreamDecoder:
    """Incremental decoder returning the text deltas completed by each chunk."""

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.accumulated = ""
        self.finished = False

    def feed(self, chunk: bytes) -> list[str]:
        if not chunk:
            return []
        self._buffer += self._decoder.decode(bytes(chunk))
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._collect(lines)

    def finish(self) -> list[str]:
        """Decode the final line even without a trailing newline."""
        self._buffer += self._decoder.decode(b"", final=True)
        lines = [self._buffer] if self._buffer else []
        self._buffer = ""
        return self._collect(lines)

    def _collect(self, lines: list[str]) -> list[str]:
        deltas: list[str] = []
        for line in lines:
            frame = parse_data_stream_line(line.rstrip("\r"), logger=self.logger)
            if frame.kind == "text" and frame.text:
                self.accumulated += frame.text
                deltas.append(frame.text)
            elif frame.kind == "finish":
                self.finished = True
        return deltas

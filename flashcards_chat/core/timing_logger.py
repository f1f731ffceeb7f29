"""Request timing instrumentation for streamed chat requests.

Provides:
- @timed decorator recording enter/exit of a function
- timing_scope() context manager for code block timing
- timing_mark() for the points a stream passes through
  (``http_request_start``, ``stream_first_chunk``, ``stream_complete``)
- request_latency() turning those marks into first-chunk and total latency
- JSONL file output (configured via the TIMING_LOG_FILE valve)

Usage:
    from .core.timing_logger import timed, timing_mark

    @timed
    async def _stream(self, ...):
        timing_mark("http_request_start")

Enable via valve: ENABLE_TIMING_LOG=True
"""

from __future__ import annotations

import datetime
import functools
import inspect
import json
import threading
import time
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, TextIO, TypeVar

MAX_TIMING_EVENTS = 10000
_PACKAGE_PREFIX = "flashcards_chat."

_timing_enabled: ContextVar[bool] = ContextVar("timing_enabled", default=False)
_timing_request_id: ContextVar[Optional[str]] = ContextVar("timing_request_id", default=None)


@dataclass(slots=True)
class TimingEvent:
    """One enter, exit or mark event."""

    ts: float  # perf_counter
    wall_ts: float
    event: str
    label: str
    elapsed_ms: Optional[float] = None

    def to_record(self, request_id: str) -> Dict[str, Any]:
        wall = datetime.datetime.fromtimestamp(self.wall_ts, tz=datetime.timezone.utc)
        record: Dict[str, Any] = {
            "ts": wall.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "perf_ts": round(self.ts, 6),
            "event": self.event,
            "label": self.label,
            "request_id": request_id,
        }
        if self.elapsed_ms is not None:
            record["elapsed_ms"] = round(self.elapsed_ms, 3)
        return record


class _JsonlSink:
    """Append-only JSONL file shared by every request in the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._handle: Optional[TextIO] = None

    def open(self, file_path: str) -> bool:
        path = Path(file_path)
        with self._lock:
            if self._handle is not None and self._path == path:
                return True
            self._close_locked()
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = open(path, "a", encoding="utf-8")
            except OSError:
                return False
            self._path = path
            return True

    def close(self) -> None:
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError:
                pass
        self._handle = None
        self._path = None

    def write(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"
        with self._lock:
            if self._handle is None:
                return
            try:
                self._handle.write(line)
                self._handle.flush()
            except OSError:
                pass


class _RequestTimings:
    """Bounded in-memory event lists keyed by request id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Dict[str, Deque[Dict[str, Any]]] = {}

    def append(self, request_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            bucket = self._events.get(request_id)
            if bucket is None:
                bucket = self._events[request_id] = deque(maxlen=MAX_TIMING_EVENTS)
            bucket.append(record)

    def get(self, request_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events.get(request_id) or ())

    def pop(self, request_id: str) -> None:
        with self._lock:
            self._events.pop(request_id, None)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


_sink = _JsonlSink()
_timings = _RequestTimings()


def _record_event(event: TimingEvent) -> None:
    if not _timing_enabled.get():
        return
    request_id = _timing_request_id.get()
    if not request_id:
        return
    record = event.to_record(request_id)
    _sink.write(record)
    _timings.append(request_id, record)


def ensure_timing_file_configured(file_path: str) -> bool:
    """Open ``file_path`` for appending unless it is already the active file.

    Returns:
        True if the file is ready for writing, False if it could not be opened.
    """
    return _sink.open(file_path)


def close_timing_file() -> None:
    """Close the timing log file. Safe to call multiple times."""
    _sink.close()


def set_timing_context(request_id: str, enabled: bool) -> None:
    _timing_request_id.set(request_id)
    _timing_enabled.set(enabled)


def clear_timing_context() -> None:
    _timing_request_id.set(None)
    _timing_enabled.set(False)


def get_timing_events(request_id: str) -> List[Dict[str, Any]]:
    return _timings.get(request_id)


def clear_timing_events(request_id: str) -> None:
    _timings.pop(request_id)


def request_latency(request_id: str) -> Dict[str, Optional[float]]:
    """Return stream latencies in milliseconds derived from a request's marks.

    ``first_chunk_ms`` runs from ``http_request_start`` to
    ``stream_first_chunk``; ``total_ms`` from ``http_request_start`` to
    ``stream_complete``. Either is None when a mark is missing.
    """
    marks: Dict[str, float] = {}
    for record in _timings.get(request_id):
        if record["event"] == "mark":
            marks.setdefault(record["label"], record["perf_ts"])
    start = marks.get("http_request_start")

    def _since_start(label: str) -> Optional[float]:
        end = marks.get(label)
        if start is None or end is None:
            return None
        return round((end - start) * 1000, 3)

    return {
        "first_chunk_ms": _since_start("stream_first_chunk"),
        "total_ms": _since_start("stream_complete"),
    }


def timing_mark(label: str) -> None:
    """Record a single point-in-time event."""
    if not _timing_enabled.get():
        return
    _record_event(TimingEvent(ts=time.perf_counter(), wall_ts=time.time(), event="mark", label=label))


@contextmanager
def timing_scope(label: str):
    """Record enter/exit events around a block, with elapsed time on exit."""
    if not _timing_enabled.get():
        yield
        return
    start = time.perf_counter()
    _record_event(TimingEvent(ts=start, wall_ts=time.time(), event="enter", label=label))
    try:
        yield
    finally:
        end = time.perf_counter()
        _record_event(
            TimingEvent(ts=end, wall_ts=time.time(), event="exit", label=label, elapsed_ms=(end - start) * 1000)
        )


F = TypeVar("F", bound=Callable[..., Any])


def _label_for(func: Callable[..., Any]) -> str:
    module = getattr(func, "__module__", "") or ""
    if module.startswith(_PACKAGE_PREFIX):
        module = module[len(_PACKAGE_PREFIX):]
    qualname = getattr(func, "__qualname__", "") or getattr(func, "__name__", "unknown")
    return f"{module}.{qualname}" if module else qualname


def timed(func: F) -> F:
    """Time every call of ``func`` (sync or async) when timing is enabled."""
    label = _label_for(func)

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            if not _timing_enabled.get():
                return await func(*args, **kwargs)
            with timing_scope(label):
                return await func(*args, **kwargs)

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        if not _timing_enabled.get():
            return func(*args, **kwargs)
        with timing_scope(label):
            return func(*args, **kwargs)

    return sync_wrapper  # type: ignore[return-value]

"""Streaming response processing subsystem.

This package contains streaming-related functionality:
- sse_parser: event-stream decoding and fragment accumulation
- data_stream_parser: line protocol of the completion endpoint
- state_store: thinking/streaming flags and the live message
- event_emitter: toast notifications
"""

from .sse_parser import SSEDecoder, SSEParser, StreamEvent, parse_raw_event
from .data_stream_parser import DataStreamDecoder, parse_data_stream_line
from .state_store import StreamingStateStore, StreamPhase, attach_debug_logger
from .event_emitter import NotificationEmitter

__all__ = [
    "SSEDecoder",
    "SSEParser",
    "StreamEvent",
    "parse_raw_event",
    "DataStreamDecoder",
    "parse_data_stream_line",
    "StreamingStateStore",
    "StreamPhase",
    "attach_debug_logger",
    "NotificationEmitter",
]

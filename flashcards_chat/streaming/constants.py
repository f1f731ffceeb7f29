"""Shared streaming constants to avoid duplication across modules."""

# Event-stream framing consumed by the SSE decoder.
EVENT_BOUNDARY = "\n\n"
DATA_PREFIX = "data: "
DONE_LINE = "data: [DONE]"
ERROR_PAYLOAD_PREFIX = "[ERROR] : "

# Line protocol of the standalone completion endpoint.
DATA_STREAM_TEXT_PREFIX = "0:"
DATA_STREAM_FUNCTION_PREFIX = "f:"
DATA_STREAM_FINISH_PREFIXES = ("e:", "d:")

DEFAULT_CHUNK_BYTES = 4096

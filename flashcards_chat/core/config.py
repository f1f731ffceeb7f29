"""Configuration management for the flashcards chat client.

This module contains the configuration schema and constants:
- Valves: Global configuration (backend URLs, auth token, timeouts, logging)
- Endpoint path constants for the AI and message routes
- HTTP session factory shared by every client
"""

from __future__ import annotations

import json
import logging
import os
from typing import Literal, Optional

import aiohttp
from pydantic import BaseModel, Field, model_validator

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_DEFAULT_CONVEX_URL = "http://127.0.0.1:3210"

CHAT_ASSISTANTS_PATH = "/ai/chats/assistants"
MESSAGES_PATH = "/messages"
AI_COMPLETION_PATH = "/ai/completion"
MUTATION_API_PATH = "/api/mutation"

CREATE_MESSAGE_MUTATION = "messages_mutations:create"
UPDATE_MESSAGE_MUTATION = "messages:update"


def _resolve_log_level_default() -> str:
    value = (os.getenv("GLOBAL_LOG_LEVEL") or "INFO").strip().upper()
    if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return "INFO"
    return value


def site_url_from_convex_url(convex_url: str) -> str:
    """Return the HTTP-actions host for a deployment URL (``.cloud`` -> ``.site``)."""
    return (convex_url or "").strip().rstrip("/").replace(".cloud", ".site")


# -----------------------------------------------------------------------------
# Valves Configuration Class
# -----------------------------------------------------------------------------

class Valves(BaseModel):
    """Global valve configuration shared by the message and completion clients."""

    # Connection & Auth
    CONVEX_URL: str = Field(
        default=((os.getenv("CONVEX_URL") or os.getenv("VITE_CONVEX_URL") or "").strip() or _DEFAULT_CONVEX_URL),
        description="Deployment URL of the managed backend (used for mutations).",
    )
    SITE_URL: str = Field(
        default=(os.getenv("CONVEX_SITE_URL") or "").strip(),
        description="Host serving HTTP actions. When empty it is derived from CONVEX_URL by swapping `.cloud` for `.site`.",
    )
    AUTH_TOKEN: str = Field(
        default=(os.getenv("FLASHCARDS_AUTH_TOKEN") or "").strip(),
        description="Bearer token sent with every AI and mutation request.",
    )
    HTTP_CONNECT_TIMEOUT_SECONDS: int = Field(
        default=10,
        ge=1,
        description="Seconds to wait for the TCP/TLS connection before failing.",
    )
    HTTP_TOTAL_TIMEOUT_SECONDS: Optional[int] = Field(
        default=None,
        ge=1,
        description="Overall HTTP timeout. Null keeps long streamed responses from being cut off.",
    )
    HTTP_SOCK_READ_SECONDS: Optional[int] = Field(
        default=None,
        ge=1,
        description="Idle read timeout for active streams. Null leaves stalled streams to the transport.",
    )

    # Streaming
    STREAM_CHUNK_BYTES: int = Field(
        default=4096,
        ge=1,
        description="Maximum bytes pulled from the response body per read.",
    )
    FLUSH_TRAILING_EVENT: bool = Field(
        default=False,
        description=(
            "When True, text left in the buffer without a closing blank line is parsed as a final event "
            "at stream end. When False it is dropped."
        ),
    )
    DEBUG_STREAM: bool = Field(
        default=False,
        description="Log every raw event block and decoded payload at DEBUG level.",
    )

    # Persistence
    PERSIST_MAX_RETRIES: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for saving a message when the mutation transport fails.",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default_factory=_resolve_log_level_default,
        description="Select logging level.",
    )
    SESSION_LOG_MAX_LINES: int = Field(
        default=2000,
        ge=100,
        le=200000,
        description="Maximum number of in-memory SessionLogger records retained per request.",
    )
    ENABLE_TIMING_LOG: bool = Field(
        default=False,
        description="Write function timing events for each request to TIMING_LOG_FILE.",
    )
    TIMING_LOG_FILE: str = Field(
        default="logs/timing.jsonl",
        description="JSONL file receiving timing events when ENABLE_TIMING_LOG is on.",
    )

    @model_validator(mode="after")
    def _derive_site_url(self) -> "Valves":
        if not self.SITE_URL:
            self.SITE_URL = site_url_from_convex_url(self.CONVEX_URL)
        else:
            self.SITE_URL = self.SITE_URL.strip().rstrip("/")
        self.CONVEX_URL = self.CONVEX_URL.strip().rstrip("/")
        return self

    def site_endpoint(self, path: str) -> str:
        return f"{self.SITE_URL}{path}"

    def auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.AUTH_TOKEN:
            headers["Authorization"] = f"Bearer {self.AUTH_TOKEN}"
        return headers


def create_http_session(valves: Valves) -> aiohttp.ClientSession:
    """Return a fresh ClientSession with sane defaults for per-request use."""
    connector = aiohttp.TCPConnector(
        limit=50,
        limit_per_host=10,
        keepalive_timeout=75,
        ttl_dns_cache=300,
    )
    connect_timeout = float(valves.HTTP_CONNECT_TIMEOUT_SECONDS)
    total_timeout = float(valves.HTTP_TOTAL_TIMEOUT_SECONDS) if valves.HTTP_TOTAL_TIMEOUT_SECONDS else None
    sock_read = float(valves.HTTP_SOCK_READ_SECONDS) if valves.HTTP_SOCK_READ_SECONDS else None
    timeout = aiohttp.ClientTimeout(total=total_timeout, connect=connect_timeout, sock_read=sock_read)
    LOGGER.debug(
        "HTTP timeouts: connect=%ss total=%s sock_read=%s",
        connect_timeout,
        total_timeout if total_timeout is not None else "disabled",
        sock_read if sock_read is not None else "disabled",
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=timeout,
        json_serialize=json.dumps,
    )

"""Core infrastructure module.

Foundation services required by all domains:
- Configuration schema (Valves) and HTTP session factory
- Error classes and toast texts
- Session logging
- Timing instrumentation
"""

from .config import Valves, LOGGER, create_http_session, site_url_from_convex_url
from .errors import (
    FlashcardsChatError,
    MessageRequestError,
    MutationError,
    StatusMessages,
    StreamUnavailableError,
)
from .logging_system import SessionLogger

__all__ = [
    "Valves",
    "LOGGER",
    "create_http_session",
    "site_url_from_convex_url",
    "FlashcardsChatError",
    "MessageRequestError",
    "MutationError",
    "StatusMessages",
    "StreamUnavailableError",
    "SessionLogger",
]

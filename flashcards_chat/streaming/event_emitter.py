"""Notification emission for user-visible feedback.

The UI hands the client an async event emitter; this module wraps it so
toasts can be sent fire-and-forget from the request lifecycle.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Literal, Optional

from ..core.errors import error_description

EventEmitter = Callable[[dict[str, Any]], Awaitable[None]]
NotificationLevel = Literal["info", "success", "warning", "error"]

LOGGER = logging.getLogger(__name__)


class NotificationEmitter:
    """Sends toast-style notifications through an optional event emitter.

    Emission never raises: a failing sink is logged and the request carries
    on. Without an emitter every call is a no-op.
    """

    def __init__(
        self,
        event_emitter: Optional[EventEmitter] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._event_emitter = event_emitter
        self.logger = logger or LOGGER

    @property
    def enabled(self) -> bool:
        return self._event_emitter is not None

    async def emit(self, event: dict[str, Any]) -> None:
        if self._event_emitter is None:
            return
        try:
            await self._event_emitter(event)
        except Exception as exc:
            self.logger.error("Failed to emit %s event: %s", event.get("type", "unknown"), exc)

    async def notify(
        self,
        content: str,
        *,
        level: NotificationLevel = "info",
        description: Optional[str] = None,
    ) -> None:
        """Emit a toast notification.

        The ``level`` argument controls the styling of the notification.
        """
        data: dict[str, Any] = {"type": level, "content": content}
        if description:
            data["description"] = description
        await self.emit({"type": "notification", "data": data})

    async def notify_success(self, content: str) -> None:
        await self.notify(content, level="success")

    async def notify_error(self, title: str, error: BaseException | str | None = None) -> None:
        await self.notify(title, level="error", description=error_description(error))

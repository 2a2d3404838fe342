"""Logging notification adapter — implements NotificationPort.

Default sink for user-visible sync alerts when no UI channel is attached.
An optional callback lets a UI layer surface the same messages.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Logging implementation of NotificationPort."""

    def __init__(
        self, callback: Callable[[str | None, str], Awaitable[None]] | None = None,
    ) -> None:
        self._callback = callback

    async def send_message(self, user_id: str | None, text: str) -> None:
        logger.warning("Sync alert for user %s: %s", user_id or "-", text)
        if self._callback is not None:
            await self._callback(user_id, text)

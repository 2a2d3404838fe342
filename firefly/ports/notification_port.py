"""Notification port — abstract interface for user-visible sync alerts.

Only storage failures and dead-lettered operations are escalated here;
transient sync conditions are reflected in per-record status fields.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Abstract notification interface used by the sync coordinator."""

    async def send_message(self, user_id: str | None, text: str) -> None: ...

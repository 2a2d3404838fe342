"""Remote store port — abstract interface for the hosted data store.

The sync coordinator depends on this protocol, never on a specific HTTP
client. Every write carries an idempotency key so a retried call has no
duplicate side effect.
"""

from __future__ import annotations

from typing import Protocol


class RemoteStoreError(Exception):
    """Base class for failures reported by a remote store adapter."""


class NetworkFailure(RemoteStoreError):
    """Transient failure (timeout, connection error, 5xx). Safe to retry."""


class RemoteRejection(RemoteStoreError):
    """The store permanently refused the request (4xx, validation, conflict)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteStorePort(Protocol):
    """Abstract remote CRUD interface used by the sync coordinator.

    Write methods return the created/updated record as a dict with at least
    an ``id`` key.
    """

    async def create_session(self, payload: dict, idempotency_key: str) -> dict: ...

    async def update_session(
        self, session_id: str, payload: dict, idempotency_key: str
    ) -> dict: ...

    async def create_action(
        self, session_id: str, payload: dict, idempotency_key: str
    ) -> dict: ...

    async def update_action(
        self, action_id: str, payload: dict, idempotency_key: str
    ) -> dict: ...

    async def delete_action(self, action_id: str, idempotency_key: str) -> None: ...

    async def list_sessions(self, user_id: str) -> list[dict]: ...

    async def list_actions(self, session_id: str) -> list[dict]: ...

    async def ping(self) -> bool: ...

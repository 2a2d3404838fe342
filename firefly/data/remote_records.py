"""
Firefly Offline Sync — Remote record contracts.

Shape of the rows the hosted store returns for sessions and actions.
Responses are validated against these models before the reconciler folds
them into the local cache.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, field_validator

from firefly.data.models import (
    Confidence,
    OfflineAction,
    OfflineSession,
    SessionStatus,
)


def _iso_timestamp(value: str | None) -> str:
    """Reject timestamps the merge could not compare; empty means unknown."""
    value = str(value) if value else ""
    if value:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


class RemoteSession(BaseModel):
    """A session row as stored remotely.

    JSON example:
    {
        "id": "srv-1",
        "user_id": "u-42",
        "goal": "Write report",
        "total_estimated_time": 45,
        "actual_time_spent": 0,
        "status": "active",
        "created_at": "2025-03-01T09:00:00+00:00",
        "updated_at": "2025-03-01T09:00:00+00:00"
    }
    """
    id: str
    user_id: str | None = None
    goal: str
    total_estimated_time: int = 0
    actual_time_spent: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: str = ""
    updated_at: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: str | int) -> str:
        return str(v)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def check_timestamp(cls, v: str | None) -> str:
        return _iso_timestamp(v)

    def to_local(self, offline_id: str) -> OfflineSession:
        return OfflineSession(
            offline_id=offline_id,
            remote_id=self.id,
            user_id=self.user_id,
            goal=self.goal,
            total_estimated_time=self.total_estimated_time or 0,
            actual_time_spent=self.actual_time_spent or 0,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at or self.created_at,
            needs_sync=False,
        )


class RemoteAction(BaseModel):
    """An action row as stored remotely; ``session_id`` is the remote session id."""
    id: str
    session_id: str
    text: str
    estimated_minutes: int | None = None
    confidence: Confidence = Confidence.MEDIUM
    is_custom: bool = False
    original_text: str | None = None
    order_index: int = 0
    completed_at: str | None = None
    created_at: str = ""
    updated_at: str = ""   # older rows only carry created_at

    @field_validator("id", "session_id", mode="before")
    @classmethod
    def coerce_id(cls, v: str | int) -> str:
        return str(v)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def check_timestamp(cls, v: str | None) -> str:
        return _iso_timestamp(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def default_confidence(cls, v: str | None) -> str:
        return v or Confidence.MEDIUM.value

    def to_local(self, offline_id: str, session_offline_id: str) -> OfflineAction:
        return OfflineAction(
            offline_id=offline_id,
            session_id=session_offline_id,
            session_remote_id=self.session_id,
            remote_id=self.id,
            text=self.text,
            estimated_minutes=self.estimated_minutes,
            confidence=self.confidence,
            is_custom=self.is_custom,
            original_text=self.original_text,
            order_index=self.order_index,
            completed_at=self.completed_at,
            created_at=self.created_at,
            updated_at=self.updated_at or self.created_at,
            needs_sync=False,
        )

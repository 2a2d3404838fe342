"""
Firefly Offline Sync — Data Models.

Local-first records: sessions and their micro-actions live on the device
until the sync coordinator has pushed them to the remote store. The
pending-operation log records every unsynced mutation in enqueue order.
"""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

SESSIONS = "sessions"
ACTIONS = "actions"
COLLECTIONS = (SESSIONS, ACTIONS)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OperationKind(str, Enum):
    CREATE_SESSION = "create_session"
    UPDATE_SESSION = "update_session"
    CREATE_ACTION = "create_action"
    UPDATE_ACTION = "update_action"
    DELETE_ACTION = "delete_action"

    @property
    def collection(self) -> str:
        return SESSIONS if self.value.endswith("_session") else ACTIONS


class OperationState(str, Enum):
    """Lifecycle of one pending operation inside a drain pass."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_offline_id() -> str:
    """Client-side id, e.g. ``offline_1718000000000_k3j9x0a1b``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"offline_{int(time.time() * 1000)}_{suffix}"


@dataclass
class OfflineSession:
    """A focus session created (possibly) while offline."""

    offline_id: str
    goal: str
    user_id: str | None = None
    remote_id: str | None = None
    total_estimated_time: int = 0       # minutes
    actual_time_spent: int = 0          # minutes
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    needs_sync: bool = True
    sync_attempts: int = 0
    last_sync_attempt: str | None = None

    def to_payload(self) -> dict:
        """Current local state as a queue payload / request body source."""
        return {
            "offline_id": self.offline_id,
            "remote_id": self.remote_id,
            "user_id": self.user_id,
            "goal": self.goal,
            "total_estimated_time": self.total_estimated_time,
            "actual_time_spent": self.actual_time_spent,
            "status": SessionStatus(self.status).value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class OfflineAction:
    """One micro-task in a session's decomposition.

    ``session_id`` always holds the parent's local id; ``session_remote_id``
    stays None until the parent session has been bound to a remote id.
    """

    offline_id: str
    session_id: str
    text: str
    order_index: int
    session_remote_id: str | None = None
    remote_id: str | None = None
    estimated_minutes: int | None = None
    confidence: Confidence = Confidence.MEDIUM
    is_custom: bool = False
    original_text: str | None = None
    completed_at: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    needs_sync: bool = True
    sync_attempts: int = 0
    last_sync_attempt: str | None = None

    def to_payload(self) -> dict:
        return {
            "offline_id": self.offline_id,
            "remote_id": self.remote_id,
            "session_id": self.session_id,
            "session_remote_id": self.session_remote_id,
            "text": self.text,
            "estimated_minutes": self.estimated_minutes,
            "confidence": Confidence(self.confidence).value,
            "is_custom": self.is_custom,
            "original_text": self.original_text,
            "order_index": self.order_index,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class PendingSyncOperation:
    """Append-only log entry for one unsynced mutation.

    ``id`` doubles as the idempotency key sent to the remote store, so a
    retried create never produces a second remote record.
    """

    id: str
    seq: int
    kind: OperationKind
    target_id: str        # local id of the affected entity
    session_id: str       # local id of the owning session (ordering key)
    payload: dict
    enqueued_at: str
    attempts: int = 0
    next_attempt_at: float = 0.0   # epoch seconds; 0 means "now"


@dataclass
class DeadLetter:
    """A permanently failed operation kept for diagnostics."""

    operation: PendingSyncOperation
    reason: str
    failed_at: str
    status_code: int | None = None


@dataclass
class SyncResult:
    """Outcome counters of one drain pass."""

    synced: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class SyncStatus:
    """Snapshot the UI can poll to render a sync indicator."""

    is_online: bool
    pending_count: int
    in_progress: bool
    last_sync_time: str | None = None
    dead_letter_count: int = 0

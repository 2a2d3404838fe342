"""Shared test fixtures and configuration.

Sets up fake environment variables so firefly.config doesn't sys.exit(),
and provides common fixtures like a temp offline store and an in-memory
remote store.
"""

import os

# Patch env vars BEFORE any firefly imports
os.environ.setdefault("FIREFLY_API_URL", "https://api.firefly.test")
os.environ.setdefault("FIREFLY_API_KEY", "fake-api-key-for-tests")
os.environ.setdefault("FIREFLY_AUTH_URL", "https://auth.firefly.test")
os.environ.setdefault("DATABASE_PATH", ":memory:")

import pytest

from firefly.ports.remote_store_port import NetworkFailure, RemoteRejection


class FakeRemoteStore:
    """In-memory RemoteStorePort that honours idempotency keys.

    ``failures`` maps a method name to exceptions raised on its next calls,
    one per call. ``lose_response`` lists method names whose next call
    commits the write and then fails as if the response never arrived.
    """

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.actions: dict[str, dict] = {}
        self.calls: list[tuple[str, str | None, str | None]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.lose_response: list[str] = []
        self.online = True
        self._replies: dict[str, dict] = {}
        self._counter = 0

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _enter(self, method: str, key: str | None, target: str | None) -> None:
        self.calls.append((method, key, target))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _reply(self, method: str, key: str, record: dict) -> dict:
        self._replies[key] = record
        if method in self.lose_response:
            self.lose_response.remove(method)
            raise NetworkFailure(f"{method}: connection reset after commit")
        return dict(record)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    async def create_session(self, payload, idempotency_key):
        self._enter("create_session", idempotency_key, None)
        if idempotency_key in self._replies:
            return dict(self._replies[idempotency_key])
        record = {**payload, "id": self._next_id("srv")}
        self.sessions[record["id"]] = record
        return self._reply("create_session", idempotency_key, record)

    async def update_session(self, session_id, payload, idempotency_key):
        self._enter("update_session", idempotency_key, session_id)
        if session_id not in self.sessions:
            raise RemoteRejection(f"Session {session_id} not found", 404)
        self.sessions[session_id].update(payload)
        return self._reply("update_session", idempotency_key, self.sessions[session_id])

    async def create_action(self, session_id, payload, idempotency_key):
        self._enter("create_action", idempotency_key, session_id)
        if idempotency_key in self._replies:
            return dict(self._replies[idempotency_key])
        if session_id not in self.sessions:
            raise RemoteRejection(f"Session {session_id} not found", 404)
        record = {**payload, "id": self._next_id("act"), "session_id": session_id}
        self.actions[record["id"]] = record
        return self._reply("create_action", idempotency_key, record)

    async def update_action(self, action_id, payload, idempotency_key):
        self._enter("update_action", idempotency_key, action_id)
        if action_id not in self.actions:
            raise RemoteRejection(f"Action {action_id} not found", 404)
        self.actions[action_id].update(payload)
        return self._reply("update_action", idempotency_key, self.actions[action_id])

    async def delete_action(self, action_id, idempotency_key):
        self._enter("delete_action", idempotency_key, action_id)
        self.actions.pop(action_id, None)

    async def list_sessions(self, user_id):
        self._enter("list_sessions", None, user_id)
        return [dict(s) for s in self.sessions.values() if s.get("user_id") == user_id]

    async def list_actions(self, session_id):
        self._enter("list_actions", None, session_id)
        return [dict(a) for a in self.actions.values() if a["session_id"] == session_id]

    async def ping(self):
        return self.online

    def methods(self) -> list[str]:
        return [method for method, _, _ in self.calls]


class FakeClock:
    """Manually advanced epoch clock for backoff tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_offline.db")


@pytest.fixture
def store(tmp_db_path):
    """Return an opened OfflineStore backed by a temp file."""
    from firefly.data.db import OfflineStore
    offline_store = OfflineStore(db_path=tmp_db_path).open()
    yield offline_store
    offline_store.close()


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def coordinator(store, remote, clock):
    """SyncCoordinator wired to the temp store, fake remote and fake clock."""
    from firefly.core.coordinator import SyncCoordinator
    return SyncCoordinator(store, remote, clock=clock, reconnect_delay=0)


@pytest.fixture
def service(store, coordinator):
    from firefly.core.session_service import FocusSessionService
    return FocusSessionService(store, coordinator, user_id="user-1")

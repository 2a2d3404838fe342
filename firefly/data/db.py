"""
Firefly Offline Sync — Local Durable Queue.

SQLite-backed, restart-surviving storage for cached sessions and actions,
the pending-operation log and the dead-letter set. This is the only write
path for locally-originated mutations; nothing here touches the network.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from firefly.data.models import (
    ACTIONS,
    COLLECTIONS,
    SESSIONS,
    Confidence,
    DeadLetter,
    OfflineAction,
    OfflineSession,
    OperationKind,
    PendingSyncOperation,
    SessionStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

_PAGE_SIZE = 100

_SESSION_COLUMNS = (
    "offline_id", "remote_id", "user_id", "goal", "total_estimated_time",
    "actual_time_spent", "status", "created_at", "updated_at",
    "needs_sync", "sync_attempts", "last_sync_attempt",
)

_ACTION_COLUMNS = (
    "offline_id", "session_id", "session_remote_id", "remote_id", "text",
    "estimated_minutes", "confidence", "is_custom", "original_text",
    "order_index", "completed_at", "created_at", "updated_at",
    "needs_sync", "sync_attempts", "last_sync_attempt",
)


class StorageFailure(Exception):
    """Raised when local persistence is unavailable or corrupt.

    The mutation that triggered it was NOT persisted.
    """


def payload_hash(payload: dict) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class OfflineStore:
    """SQLite-backed durable queue and entity cache.

    One connection, guarded by a re-entrant lock, so the sync coordinator's
    reads (run via ``asyncio.to_thread``) can interleave safely with
    UI-triggered writes.
    """

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from firefly.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._batch_depth = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> OfflineStore:
        """Open the database and create the schema if needed."""
        if self._conn is not None:
            return self
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
        except (sqlite3.Error, OSError) as exc:
            logger.error("Failed to open offline store at %s: %s", self._db_path, exc)
            raise StorageFailure(f"Cannot open offline store: {exc}") from exc
        self._conn = conn
        self._init_db()
        logger.info("Offline store opened at %s", self._db_path)
        return self

    def close(self) -> None:
        """Commit and close. Safe to call twice."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
                self._conn.close()
            except sqlite3.Error as exc:
                raise StorageFailure(f"Failed to close offline store: {exc}") from exc
            finally:
                self._conn = None
        logger.info("Offline store closed")

    def __enter__(self) -> OfflineStore:
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside one locked transaction.

        Commits on success, rolls back on any error. sqlite errors surface
        as StorageFailure. Inside ``batch()`` the enclosing transaction is
        reused instead.
        """
        with self._lock:
            if self._conn is None:
                raise StorageFailure("Offline store is not open")
            try:
                if self._batch_depth:
                    yield self._conn
                else:
                    with self._conn:
                        yield self._conn
            except sqlite3.Error as exc:
                logger.error("Offline store error: %s", exc)
                raise StorageFailure(str(exc)) from exc

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group several store calls into one all-or-nothing transaction."""
        with self._lock:
            if self._conn is None:
                raise StorageFailure("Offline store is not open")
            if self._batch_depth:
                self._batch_depth += 1
                try:
                    yield
                finally:
                    self._batch_depth -= 1
                return
            self._batch_depth = 1
            try:
                with self._conn:
                    yield
            except sqlite3.Error as exc:
                logger.error("Offline store batch failed: %s", exc)
                raise StorageFailure(str(exc)) from exc
            finally:
                self._batch_depth = 0

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    offline_id           TEXT    PRIMARY KEY,
                    remote_id            TEXT,
                    user_id              TEXT,
                    goal                 TEXT    NOT NULL,
                    total_estimated_time INTEGER NOT NULL DEFAULT 0,
                    actual_time_spent    INTEGER NOT NULL DEFAULT 0,
                    status               TEXT    NOT NULL DEFAULT 'active',
                    created_at           TEXT    NOT NULL,
                    updated_at           TEXT    NOT NULL,
                    needs_sync           INTEGER NOT NULL DEFAULT 1,
                    sync_attempts        INTEGER NOT NULL DEFAULT 0,
                    last_sync_attempt    TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS actions (
                    offline_id        TEXT    PRIMARY KEY,
                    session_id        TEXT    NOT NULL,
                    session_remote_id TEXT,
                    remote_id         TEXT,
                    text              TEXT    NOT NULL,
                    estimated_minutes INTEGER,
                    confidence        TEXT    NOT NULL DEFAULT 'medium',
                    is_custom         INTEGER NOT NULL DEFAULT 0,
                    original_text     TEXT,
                    order_index       INTEGER NOT NULL,
                    completed_at      TEXT,
                    created_at        TEXT    NOT NULL,
                    updated_at        TEXT    NOT NULL,
                    needs_sync        INTEGER NOT NULL DEFAULT 1,
                    sync_attempts     INTEGER NOT NULL DEFAULT 0,
                    last_sync_attempt TEXT
                )
            """)
            # AUTOINCREMENT keeps seq monotonic even after removals
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_ops (
                    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
                    id              TEXT    NOT NULL UNIQUE,
                    kind            TEXT    NOT NULL,
                    target_id       TEXT    NOT NULL,
                    session_id      TEXT    NOT NULL,
                    payload         TEXT    NOT NULL,
                    payload_hash    TEXT    NOT NULL,
                    enqueued_at     TEXT    NOT NULL,
                    attempts        INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at REAL    NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id          TEXT    PRIMARY KEY,
                    seq         INTEGER NOT NULL,
                    kind        TEXT    NOT NULL,
                    target_id   TEXT    NOT NULL,
                    session_id  TEXT    NOT NULL,
                    payload     TEXT    NOT NULL,
                    enqueued_at TEXT    NOT NULL,
                    attempts    INTEGER NOT NULL,
                    reason      TEXT    NOT NULL,
                    status_code INTEGER,
                    failed_at   TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_actions_session ON actions (session_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pending_target ON pending_ops (target_id)"
            )
            # One local record per server row; NULLs (unbound records) are exempt
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_remote ON sessions (remote_id)"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_actions_remote ON actions (remote_id)"
            )
        logger.debug("Offline store schema initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> OfflineSession:
        return OfflineSession(
            offline_id=row["offline_id"],
            remote_id=row["remote_id"],
            user_id=row["user_id"],
            goal=row["goal"],
            total_estimated_time=row["total_estimated_time"],
            actual_time_spent=row["actual_time_spent"],
            status=SessionStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            needs_sync=bool(row["needs_sync"]),
            sync_attempts=row["sync_attempts"],
            last_sync_attempt=row["last_sync_attempt"],
        )

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> OfflineAction:
        return OfflineAction(
            offline_id=row["offline_id"],
            session_id=row["session_id"],
            session_remote_id=row["session_remote_id"],
            remote_id=row["remote_id"],
            text=row["text"],
            estimated_minutes=row["estimated_minutes"],
            confidence=Confidence(row["confidence"]),
            is_custom=bool(row["is_custom"]),
            original_text=row["original_text"],
            order_index=row["order_index"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            needs_sync=bool(row["needs_sync"]),
            sync_attempts=row["sync_attempts"],
            last_sync_attempt=row["last_sync_attempt"],
        )

    @staticmethod
    def _row_to_operation(row: sqlite3.Row) -> PendingSyncOperation:
        return PendingSyncOperation(
            id=row["id"],
            seq=row["seq"],
            kind=OperationKind(row["kind"]),
            target_id=row["target_id"],
            session_id=row["session_id"],
            payload=json.loads(row["payload"]),
            enqueued_at=row["enqueued_at"],
            attempts=row["attempts"],
            next_attempt_at=row["next_attempt_at"],
        )

    @staticmethod
    def _record_values(collection: str, record) -> tuple:
        if collection == SESSIONS:
            return (
                record.offline_id, record.remote_id, record.user_id, record.goal,
                record.total_estimated_time, record.actual_time_spent,
                SessionStatus(record.status).value, record.created_at,
                record.updated_at, int(record.needs_sync), record.sync_attempts,
                record.last_sync_attempt,
            )
        return (
            record.offline_id, record.session_id, record.session_remote_id,
            record.remote_id, record.text, record.estimated_minutes,
            Confidence(record.confidence).value, int(record.is_custom),
            record.original_text, record.order_index, record.completed_at,
            record.created_at, record.updated_at, int(record.needs_sync),
            record.sync_attempts, record.last_sync_attempt,
        )

    # ------------------------------------------------------------------
    # Entity cache
    # ------------------------------------------------------------------

    def _upsert(self, conn: sqlite3.Connection, collection: str, record) -> None:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection!r}")
        if not record.needs_sync and not record.remote_id:
            raise ValueError(
                f"{record.offline_id}: a synced record must carry a remote id"
            )
        if collection == ACTIONS:
            parent = conn.execute(
                "SELECT 1 FROM sessions WHERE offline_id = ?", (record.session_id,)
            ).fetchone()
            if parent is None:
                raise ValueError(
                    f"Action {record.offline_id} references unknown session {record.session_id}"
                )

        columns = _SESSION_COLUMNS if collection == SESSIONS else _ACTION_COLUMNS
        placeholders = ", ".join("?" * len(columns))
        conn.execute(
            f"INSERT OR REPLACE INTO {collection} ({', '.join(columns)}) "
            f"VALUES ({placeholders})",
            self._record_values(collection, record),
        )

    def put(self, collection: str, record, reset_sync: bool = True) -> None:
        """Insert or overwrite a record by local id and flag it for sync."""
        record.needs_sync = True
        if reset_sync:
            record.sync_attempts = 0
        with self._transaction() as conn:
            self._upsert(conn, collection, record)
        logger.debug("Stored %s %s", collection, record.offline_id)

    def cache_remote(self, collection: str, record) -> None:
        """Store a record that mirrors server state (needs_sync = False)."""
        record.needs_sync = False
        with self._transaction() as conn:
            self._upsert(conn, collection, record)

    def get_session(self, session_id: str) -> OfflineSession | None:
        """Look up a session by local or remote id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE offline_id = ? OR remote_id = ?",
                (session_id, session_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def get_action(self, action_id: str) -> OfflineAction | None:
        """Look up an action by local or remote id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM actions WHERE offline_id = ? OR remote_id = ?",
                (action_id, action_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_action(row)

    def find_by_remote_id(self, collection: str, remote_id: str):
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection!r}")
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {collection} WHERE remote_id = ?", (remote_id,)
            ).fetchone()
        if row is None:
            return None
        if collection == SESSIONS:
            return self._row_to_session(row)
        return self._row_to_action(row)

    def list_sessions(
        self, user_id: str | None = None, limit: int | None = None,
    ) -> list[OfflineSession]:
        """Return cached sessions, newest first, optionally scoped to a user."""
        query = "SELECT * FROM sessions"
        params: list = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(0, limit))
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_session(r) for r in rows]

    def list_actions(self, session_id: str) -> list[OfflineAction]:
        """Return a session's actions in display order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM actions WHERE session_id = ? ORDER BY order_index",
                (session_id,),
            ).fetchall()
        return [self._row_to_action(r) for r in rows]

    def mark_synced(
        self, collection: str, local_id: str, exclude_operation_id: str | None = None,
    ) -> bool:
        """Clear needs_sync in one statement.

        Refused (returns False) without a remote id, or while any queued op
        other than ``exclude_operation_id`` still targets the record.
        """
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection!r}")
        with self._transaction() as conn:
            cursor = self._mark_synced(conn, collection, local_id, exclude_operation_id)
        return cursor.rowcount > 0

    @staticmethod
    def _mark_synced(
        conn: sqlite3.Connection,
        collection: str,
        local_id: str,
        exclude_operation_id: str | None,
    ) -> sqlite3.Cursor:
        return conn.execute(
            f"UPDATE {collection} SET needs_sync = 0, sync_attempts = 0 "
            "WHERE offline_id = ? AND remote_id IS NOT NULL AND remote_id != '' "
            "AND NOT EXISTS (SELECT 1 FROM pending_ops WHERE target_id = ? AND id != ?)",
            (local_id, local_id, exclude_operation_id or ""),
        )

    def delete_record(self, collection: str, local_id: str) -> bool:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection!r}")
        with self._transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM {collection} WHERE offline_id = ?", (local_id,)
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Removed local %s record %s", collection, local_id)
        return deleted

    # ------------------------------------------------------------------
    # Pending-operation log
    # ------------------------------------------------------------------

    def enqueue_operation(
        self, kind: OperationKind | str, payload: dict,
    ) -> PendingSyncOperation:
        """Append a pending operation.

        Byte-identical mutations (same kind, target and payload) that are
        still pending are not enqueued twice; the existing entry is returned.
        """
        kind = OperationKind(kind)
        target_id = payload["offline_id"]
        if kind.collection == SESSIONS:
            session_id = target_id
        else:
            session_id = payload["session_id"]
        digest = payload_hash(payload)

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pending_ops "
                "WHERE kind = ? AND target_id = ? AND payload_hash = ?",
                (kind.value, target_id, digest),
            ).fetchone()
            if row is not None:
                logger.debug("Duplicate %s for %s ignored", kind.value, target_id)
                return self._row_to_operation(row)

            op_id = uuid.uuid4().hex
            enqueued_at = utc_now_iso()
            cursor = conn.execute(
                """
                INSERT INTO pending_ops
                    (id, kind, target_id, session_id, payload, payload_hash,
                     enqueued_at, attempts, next_attempt_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0)
                """,
                (
                    op_id, kind.value, target_id, session_id,
                    json.dumps(payload, sort_keys=True), digest, enqueued_at,
                ),
            )
            seq = cursor.lastrowid

        logger.info("Queued %s for %s (seq %d)", kind.value, target_id, seq)
        return PendingSyncOperation(
            id=op_id,
            seq=seq,
            kind=kind,
            target_id=target_id,
            session_id=session_id,
            payload=payload,
            enqueued_at=enqueued_at,
        )

    def list_pending(self) -> Iterator[PendingSyncOperation]:
        """Lazily yield pending operations in sequence order.

        Reads page by page keyed on the last seen seq, so each call starts a
        fresh, finite pass over whatever is queued.
        """
        last_seq = 0
        while True:
            with self._transaction() as conn:
                rows = conn.execute(
                    "SELECT * FROM pending_ops WHERE seq > ? ORDER BY seq LIMIT ?",
                    (last_seq, _PAGE_SIZE),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield self._row_to_operation(row)
            last_seq = rows[-1]["seq"]

    def get_operation(self, operation_id: str) -> PendingSyncOperation | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pending_ops WHERE id = ?", (operation_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_operation(row)

    def remove(self, operation_id: str) -> bool:
        """Delete one operation. No-op if it is already gone."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM pending_ops WHERE id = ?", (operation_id,)
            )
        return cursor.rowcount > 0

    def pending_count(self) -> int:
        with self._transaction() as conn:
            return conn.execute("SELECT COUNT(*) FROM pending_ops").fetchone()[0]

    def next_due_at(self) -> float | None:
        """Earliest backoff deadline among queued ops, None if the queue is empty."""
        with self._transaction() as conn:
            row = conn.execute("SELECT MIN(next_attempt_at) FROM pending_ops").fetchone()
        return row[0]

    def has_pending_kind(self, kind: OperationKind, session_id: str | None = None) -> bool:
        """True if an op of ``kind`` is queued, optionally for one owning session."""
        query = "SELECT 1 FROM pending_ops WHERE kind = ?"
        params: list = [OperationKind(kind).value]
        if session_id is not None:
            query += " AND session_id = ?"
            params.append(session_id)
        with self._transaction() as conn:
            row = conn.execute(query + " LIMIT 1", params).fetchone()
        return row is not None

    def delete_pending_for(
        self,
        target_ids: list[str],
        kinds: list[OperationKind] | None = None,
    ) -> int:
        """Drop queued ops targeting the given local ids, optionally by kind."""
        if not target_ids:
            return 0
        query = "DELETE FROM pending_ops WHERE target_id IN ({})".format(
            ",".join("?" * len(target_ids))
        )
        params: list = list(target_ids)
        if kinds:
            query += " AND kind IN ({})".format(",".join("?" * len(kinds)))
            params.extend(OperationKind(k).value for k in kinds)
        with self._transaction() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount

    def record_attempt(
        self, operation: PendingSyncOperation, next_attempt_at: float,
    ) -> int:
        """Count one failed attempt on the op and its entity.

        Returns the op's new attempt count.
        """
        now = utc_now_iso()
        collection = operation.kind.collection
        with self._transaction() as conn:
            conn.execute(
                "UPDATE pending_ops SET attempts = attempts + 1, next_attempt_at = ? "
                "WHERE id = ?",
                (next_attempt_at, operation.id),
            )
            conn.execute(
                f"UPDATE {collection} SET sync_attempts = sync_attempts + 1, "
                "last_sync_attempt = ? WHERE offline_id = ?",
                (now, operation.target_id),
            )
            row = conn.execute(
                "SELECT attempts FROM pending_ops WHERE id = ?", (operation.id,)
            ).fetchone()
        attempts = row["attempts"] if row is not None else operation.attempts + 1
        operation.attempts = attempts
        operation.next_attempt_at = next_attempt_at
        return attempts

    # ------------------------------------------------------------------
    # Dead-letter set
    # ------------------------------------------------------------------

    def move_to_dead_letter(
        self,
        operation: PendingSyncOperation,
        reason: str,
        status_code: int | None = None,
    ) -> DeadLetter:
        """Take an op out of the active queue and keep it for diagnostics."""
        failed_at = utc_now_iso()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO dead_letters
                    (id, seq, kind, target_id, session_id, payload, enqueued_at,
                     attempts, reason, status_code, failed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation.id, operation.seq, operation.kind.value,
                    operation.target_id, operation.session_id,
                    json.dumps(operation.payload, sort_keys=True),
                    operation.enqueued_at, operation.attempts, reason,
                    status_code, failed_at,
                ),
            )
            conn.execute("DELETE FROM pending_ops WHERE id = ?", (operation.id,))
        logger.error(
            "Dead-lettered %s for %s: %s", operation.kind.value, operation.target_id, reason,
        )
        return DeadLetter(
            operation=operation, reason=reason, failed_at=failed_at,
            status_code=status_code,
        )

    def list_dead_letters(self) -> list[DeadLetter]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM dead_letters ORDER BY failed_at, seq"
            ).fetchall()
        return [
            DeadLetter(
                operation=PendingSyncOperation(
                    id=r["id"],
                    seq=r["seq"],
                    kind=OperationKind(r["kind"]),
                    target_id=r["target_id"],
                    session_id=r["session_id"],
                    payload=json.loads(r["payload"]),
                    enqueued_at=r["enqueued_at"],
                    attempts=r["attempts"],
                ),
                reason=r["reason"],
                failed_at=r["failed_at"],
                status_code=r["status_code"],
            )
            for r in rows
        ]

    def dead_letter_count(self) -> int:
        with self._transaction() as conn:
            return conn.execute("SELECT COUNT(*) FROM dead_letters").fetchone()[0]

    @staticmethod
    def _dead_letter_row(conn: sqlite3.Connection, operation_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM dead_letters WHERE id = ?", (operation_id,)
        ).fetchone()
        if row is None:
            raise KeyError(operation_id)
        return row

    def _current_payload(
        self, conn: sqlite3.Connection, kind: OperationKind, target_id: str, fallback: dict,
    ) -> dict:
        if kind == OperationKind.DELETE_ACTION:
            return fallback
        row = conn.execute(
            f"SELECT * FROM {kind.collection} WHERE offline_id = ?", (target_id,)
        ).fetchone()
        if row is None:
            return fallback
        if kind.collection == SESSIONS:
            return self._row_to_session(row).to_payload()
        return self._row_to_action(row).to_payload()

    def requeue_dead_letter(self, operation_id: str) -> PendingSyncOperation:
        """Put a dead-lettered op back into the queue at its original position.

        The payload is rebuilt from the entity's current local state. The op
        keeps its id, and so its idempotency key, and starts with a fresh
        attempt count. Raises KeyError when no such dead letter exists.
        """
        with self._transaction() as conn:
            row = self._dead_letter_row(conn, operation_id)
            kind = OperationKind(row["kind"])
            payload = self._current_payload(
                conn, kind, row["target_id"], json.loads(row["payload"]),
            )
            enqueued_at = utc_now_iso()
            conn.execute("DELETE FROM dead_letters WHERE id = ?", (operation_id,))
            # AUTOINCREMENT never hands out a seq twice, so the old one is free
            conn.execute(
                """
                INSERT INTO pending_ops
                    (seq, id, kind, target_id, session_id, payload, payload_hash,
                     enqueued_at, attempts, next_attempt_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0)
                """,
                (
                    row["seq"], operation_id, kind.value, row["target_id"],
                    row["session_id"], json.dumps(payload, sort_keys=True),
                    payload_hash(payload), enqueued_at,
                ),
            )
            conn.execute(
                f"UPDATE {kind.collection} SET needs_sync = 1, sync_attempts = 0 "
                "WHERE offline_id = ?",
                (row["target_id"],),
            )

        logger.info("Requeued dead-lettered %s for %s", kind.value, row["target_id"])
        return PendingSyncOperation(
            id=operation_id,
            seq=row["seq"],
            kind=kind,
            target_id=row["target_id"],
            session_id=row["session_id"],
            payload=payload,
            enqueued_at=enqueued_at,
        )

    def discard_dead_letter(self, operation_id: str) -> bool:
        """Drop a dead letter for good, keeping the server's version.

        The entity is marked synced when it is bound and nothing else is
        queued for it; a record the server never saw keeps needs_sync.
        Returns whether the entity was marked synced. Raises KeyError when
        no such dead letter exists.
        """
        with self._transaction() as conn:
            row = self._dead_letter_row(conn, operation_id)
            conn.execute("DELETE FROM dead_letters WHERE id = ?", (operation_id,))
            cursor = self._mark_synced(
                conn, OperationKind(row["kind"]).collection, row["target_id"], None,
            )
        logger.info("Discarded dead-lettered %s for %s", row["kind"], row["target_id"])
        return cursor.rowcount > 0

    def clear(self) -> None:
        """Wipe every cached record, queued op and dead letter."""
        with self._transaction() as conn:
            for table in ("pending_ops", "dead_letters", "actions", "sessions"):
                conn.execute(f"DELETE FROM {table}")
        logger.warning("Offline store cleared at %s", self._db_path)

    # ------------------------------------------------------------------
    # Identifier rewrite (Reconciler only)
    # ------------------------------------------------------------------

    def rewrite_identifier(self, collection: str, local_id: str, remote_id: str) -> int:
        """Bind ``remote_id`` to a local record in one transaction.

        Rewrites the record, queued payloads targeting it and, for sessions,
        the ``session_remote_id`` of every dependent action and of their
        queued payloads. Raises KeyError when the record is missing and
        ValueError when another local record already holds ``remote_id``;
        nothing is committed in either case. Returns the number of queued
        payloads rewritten.
        """
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection!r}")
        rewritten = 0
        with self._transaction() as conn:
            owner = conn.execute(
                f"SELECT offline_id FROM {collection} WHERE remote_id = ? AND offline_id != ?",
                (remote_id, local_id),
            ).fetchone()
            if owner is not None:
                raise ValueError(
                    f"{remote_id} is already bound to {collection} {owner['offline_id']}"
                )
            cursor = conn.execute(
                f"UPDATE {collection} SET remote_id = ? WHERE offline_id = ?",
                (remote_id, local_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(local_id)

            rows = conn.execute(
                "SELECT id, kind, target_id, payload FROM pending_ops "
                "WHERE target_id = ? OR session_id = ?",
                (local_id, local_id),
            ).fetchall()
            for row in rows:
                payload = json.loads(row["payload"])
                kind = OperationKind(row["kind"])
                if row["target_id"] == local_id and kind.collection == collection:
                    payload["remote_id"] = remote_id
                elif collection == SESSIONS and kind.collection == ACTIONS:
                    payload["session_remote_id"] = remote_id
                else:
                    continue
                conn.execute(
                    "UPDATE pending_ops SET payload = ?, payload_hash = ? WHERE id = ?",
                    (json.dumps(payload, sort_keys=True), payload_hash(payload), row["id"]),
                )
                rewritten += 1

            if collection == SESSIONS:
                conn.execute(
                    "UPDATE actions SET session_remote_id = ? WHERE session_id = ?",
                    (remote_id, local_id),
                )
        return rewritten

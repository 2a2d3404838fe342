"""
Firefly Offline Sync — Sync Coordinator.

Drains the pending-operation log against the remote store whenever the
device is online. Per operation:

    PENDING -> IN_FLIGHT -> SUCCEEDED | FAILED_RETRYABLE | FAILED_TERMINAL

Retryable failures go back to PENDING behind an exponential backoff gate;
terminal ones land in the dead-letter set. Operations are grouped by their
owning session and each group runs strictly in enqueue order, so an update
can never overtake its create. Independent groups run concurrently up to
a bounded fan-out.

This module is transport-agnostic: it depends on the RemoteStorePort and
NotificationPort protocols, not on specific implementations.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable

from firefly.core.backoff import BackoffPolicy
from firefly.core.reconciler import (
    ReconciliationError,
    ReconciliationReport,
    Reconciler,
)
from firefly.data.db import StorageFailure
from firefly.data.models import (
    OperationKind,
    OperationState,
    PendingSyncOperation,
    SyncResult,
    SyncStatus,
    utc_now_iso,
)
from firefly.ports.remote_store_port import (
    NetworkFailure,
    RemoteRejection,
    RemoteStoreError,
)

if TYPE_CHECKING:
    from firefly.data.db import OfflineStore
    from firefly.ports.notification_port import NotificationPort
    from firefly.ports.remote_store_port import RemoteStorePort

logger = logging.getLogger(__name__)

_SESSION_FIELDS = (
    "user_id", "goal", "total_estimated_time", "actual_time_spent",
    "status", "created_at", "updated_at",
)
_ACTION_FIELDS = (
    "text", "estimated_minutes", "confidence", "is_custom", "original_text",
    "order_index", "completed_at", "created_at", "updated_at",
)

# Floor for the run loop's wait, so a due-but-failing op cannot spin it
_MIN_WAKE_SECONDS = 0.1


def _session_body(payload: dict) -> dict:
    return {k: payload.get(k) for k in _SESSION_FIELDS}


def _action_body(payload: dict) -> dict:
    return {k: payload.get(k) for k in _ACTION_FIELDS}


class SyncCoordinator:
    """Drives convergence between the offline store and the remote store."""

    def __init__(
        self,
        store: OfflineStore,
        remote: RemoteStorePort,
        reconciler: Reconciler | None = None,
        notifier: NotificationPort | None = None,
        policy: BackoffPolicy | None = None,
        fan_out: int = 4,
        sync_interval: float = 300.0,
        reconnect_delay: float = 1.0,
        user_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._remote = remote
        self._reconciler = reconciler or Reconciler(store)
        self._notifier = notifier
        self._policy = policy or BackoffPolicy()
        self._fan_out = max(1, fan_out)
        self._sync_interval = sync_interval
        self._reconnect_delay = reconnect_delay
        self._user_id = user_id
        self._clock = clock

        self._drain_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._online = True
        self._stopping = False
        self._interrupted = False
        self._drain_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._last_sync_time: str | None = None

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._online

    def notify(self) -> None:
        """Signal that the queue changed; the run loop flushes soon."""
        self._wake.set()

    def set_online(self, online: bool) -> None:
        """Update connectivity.

        Coming online schedules a flush after a short settle delay. Going
        offline cancels a running drain; whatever was in flight is counted
        as a retryable failure.
        """
        if online == self._online:
            return
        self._online = online

        if online:
            logger.info("Connectivity regained, syncing in %.1fs", self._reconnect_delay)
            loop = asyncio.get_running_loop()
            self._reconnect_handle = loop.call_later(self._reconnect_delay, self.notify)
            return

        logger.info("Connectivity lost")
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        if self._drain_task is not None and not self._drain_task.done():
            self._interrupted = True
            self._drain_task.cancel()

    def stop(self) -> None:
        self._stopping = True
        self._wake.set()

    def status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self._online,
            pending_count=self._store.pending_count(),
            in_progress=self._drain_lock.locked(),
            last_sync_time=self._last_sync_time,
            dead_letter_count=self._store.dead_letter_count(),
        )

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Flush on every trigger, timer tick or elapsed backoff until stopped."""
        self._stopping = False
        logger.info("Sync coordinator started")
        while not self._stopping:
            timeout = await self._next_wake_delay()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._stopping:
                break
            if not self._online:
                continue
            try:
                await self.flush()
            except StorageFailure as exc:
                logger.error("Sync pass aborted, offline store unavailable: %s", exc)
        logger.info("Sync coordinator stopped")

    async def _next_wake_delay(self) -> float:
        if not self._online:
            return self._sync_interval
        due_at = await asyncio.to_thread(self._store.next_due_at)
        if due_at is None:
            return self._sync_interval
        delay = min(self._sync_interval, due_at - self._clock())
        return max(delay, _MIN_WAKE_SECONDS)

    # ------------------------------------------------------------------
    # Drain pass
    # ------------------------------------------------------------------

    async def flush(self) -> SyncResult:
        """Run one drain pass over the queue.

        Only one pass runs at a time; a concurrent call returns an empty
        result straight away.
        """
        if not self._online:
            return SyncResult(errors=["Device is offline"])
        if self._drain_lock.locked():
            logger.debug("Sync already in progress, flush request ignored")
            return SyncResult()

        async with self._drain_lock:
            result = SyncResult()
            self._interrupted = False
            task = asyncio.ensure_future(self._drain(result))
            self._drain_task = task
            try:
                await task
            except asyncio.CancelledError:
                if not self._interrupted:
                    raise
                logger.warning("Sync pass interrupted by connectivity loss")
                result.errors.append("Connectivity lost during sync")
            finally:
                self._drain_task = None
                self._interrupted = False

        if result.synced > 0:
            self._last_sync_time = utc_now_iso()
            logger.info("Successfully synced %d operations", result.synced)
        if result.errors:
            logger.warning("Sync errors: %s", result.errors)
        return result

    async def _drain(self, result: SyncResult) -> None:
        operations = await asyncio.to_thread(lambda: list(self._store.list_pending()))
        if not operations:
            return

        groups: dict[str, list[PendingSyncOperation]] = {}
        for op in operations:
            groups.setdefault(op.session_id, []).append(op)

        semaphore = asyncio.Semaphore(self._fan_out)
        await asyncio.gather(
            *(self._drain_group(group, semaphore, result) for group in groups.values())
        )

    async def _drain_group(
        self,
        operations: list[PendingSyncOperation],
        semaphore: asyncio.Semaphore,
        result: SyncResult,
    ) -> None:
        """Process one session's ops in order, stopping at the first unfinished one."""
        async with semaphore:
            for index, op in enumerate(operations):
                if op.next_attempt_at > self._clock():
                    result.skipped += len(operations) - index
                    return
                state = await self._process(op, result)
                if state == OperationState.FAILED_RETRYABLE:
                    result.skipped += len(operations) - index - 1
                    return

    async def _process(
        self, queued: PendingSyncOperation, result: SyncResult,
    ) -> OperationState:
        # Re-read: an earlier op in this group may have rewritten the payload
        op = await asyncio.to_thread(self._store.get_operation, queued.id)
        if op is None:
            logger.debug("Operation %s left the queue before dispatch", queued.id)
            return OperationState.SUCCEEDED

        logger.debug("%s %s (seq %d) in flight", op.kind.value, op.target_id, op.seq)
        try:
            response = await self._dispatch(op)
        except NetworkFailure as exc:
            return await self._retry_later(op, str(exc), result)
        except RemoteRejection as exc:
            await self._dead_letter(op, str(exc), exc.status_code, result)
            return OperationState.FAILED_TERMINAL
        except asyncio.CancelledError:
            # Outcome unknown; the idempotency key makes the retry safe
            await self._retry_later(op, "Cancelled while in flight", result)
            raise

        if await asyncio.to_thread(self._store.get_operation, op.id) is None:
            logger.warning(
                "%s for %s succeeded remotely but was purged locally",
                op.kind.value, op.target_id,
            )
            return OperationState.SUCCEEDED

        try:
            await asyncio.to_thread(self._reconciler.apply_remote_result, op, response)
        except ReconciliationError as exc:
            return await self._retry_later(op, str(exc), result)

        await asyncio.to_thread(self._store.remove, op.id)
        result.synced += 1
        logger.info("Synced %s for %s", op.kind.value, op.target_id)
        return OperationState.SUCCEEDED

    async def _dispatch(self, op: PendingSyncOperation) -> dict | None:
        """Issue the remote call for one op, keyed by the op id."""
        payload = op.payload
        key = op.id

        if op.kind == OperationKind.CREATE_SESSION:
            return await self._remote.create_session(_session_body(payload), key)

        if op.kind == OperationKind.UPDATE_SESSION:
            remote_id = payload.get("remote_id")
            if not remote_id:
                raise RemoteRejection("Session has no remote id; its create never synced")
            return await self._remote.update_session(remote_id, _session_body(payload), key)

        if op.kind == OperationKind.CREATE_ACTION:
            session_remote_id = payload.get("session_remote_id")
            if not session_remote_id:
                raise RemoteRejection("Parent session has no remote id; its create never synced")
            return await self._remote.create_action(
                session_remote_id, _action_body(payload), key,
            )

        if op.kind == OperationKind.UPDATE_ACTION:
            remote_id = payload.get("remote_id")
            if not remote_id:
                raise RemoteRejection("Action has no remote id; its create never synced")
            return await self._remote.update_action(remote_id, _action_body(payload), key)

        if op.kind == OperationKind.DELETE_ACTION:
            remote_id = payload.get("remote_id")
            if remote_id:
                await self._remote.delete_action(remote_id, key)
            return None

        raise RemoteRejection(f"Unknown operation kind: {op.kind}")

    async def _retry_later(
        self, op: PendingSyncOperation, reason: str, result: SyncResult,
    ) -> OperationState:
        delay = self._policy.delay_for(op.attempts + 1)
        attempts = await asyncio.to_thread(
            self._store.record_attempt, op, self._clock() + delay,
        )
        if self._policy.is_exhausted(attempts):
            await self._dead_letter(
                op, f"Retries exhausted after {attempts} attempts: {reason}", None, result,
            )
            return OperationState.FAILED_TERMINAL

        result.retried += 1
        result.errors.append(f"Failed to sync {op.kind.value}: {reason}")
        logger.warning(
            "%s for %s failed (attempt %d), retrying in %.0fs: %s",
            op.kind.value, op.target_id, attempts, delay, reason,
        )
        return OperationState.FAILED_RETRYABLE

    async def _dead_letter(
        self,
        op: PendingSyncOperation,
        reason: str,
        status_code: int | None,
        result: SyncResult,
    ) -> None:
        await asyncio.to_thread(self._store.move_to_dead_letter, op, reason, status_code)
        result.dead_lettered += 1
        result.errors.append(f"Failed to sync {op.kind.value}: {reason}")

        if self._notifier is None:
            return
        try:
            await self._notifier.send_message(
                self._user_id,
                f"Some of your changes could not be saved ({op.kind.value}): {reason}",
            )
        except Exception as exc:
            logger.error("Failed to send sync failure notification: %s", exc)

    # ------------------------------------------------------------------
    # Full reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, user_id: str | None = None) -> ReconciliationReport | None:
        """Fetch the owner's server state and merge it into the local cache.

        Meant for app resume after a long offline period. Returns None when
        the remote store could not be read.
        """
        owner = user_id or self._user_id
        if not owner:
            raise ValueError("reconcile() needs a user id")
        if not self._online:
            return None

        try:
            sessions = await self._remote.list_sessions(owner)
            actions: list[dict] = []
            for session in sessions:
                actions.extend(await self._remote.list_actions(str(session["id"])))
        except RemoteStoreError as exc:
            logger.warning("Reconciliation fetch failed: %s", exc)
            return None

        async with self._drain_lock:
            report = await asyncio.to_thread(
                self._reconciler.reconcile_all, sessions, actions,
            )
        self.notify()
        return report

"""
Firefly Offline Sync — Reconciliation Resolver.

Folds authoritative remote state into the local cache: binds server ids to
offline-created records, and settles records edited on both sides with
last-writer-wins by ``updated_at`` (ties go to the server).

This is the only component allowed to overwrite a local id mapping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import ValidationError

from firefly.data.models import (
    ACTIONS,
    SESSIONS,
    OfflineAction,
    OperationKind,
    PendingSyncOperation,
    generate_offline_id,
)
from firefly.data.remote_records import RemoteAction, RemoteSession

if TYPE_CHECKING:
    from firefly.data.db import OfflineStore

logger = logging.getLogger(__name__)

_CREATE_KINDS = (OperationKind.CREATE_SESSION, OperationKind.CREATE_ACTION)
_UPDATE_KINDS = (OperationKind.UPDATE_SESSION, OperationKind.UPDATE_ACTION)


class ReconciliationError(Exception):
    """A remote id could not be bound; nothing was committed. Retry later."""


@dataclass
class ReconciliationConflict:
    """Both sides changed the same record; logged, never raised."""

    collection: str
    local_id: str
    remote_id: str | None
    winner: str            # "local" | "remote"
    local_updated_at: str
    remote_updated_at: str


@dataclass
class ReconciliationReport:
    adopted: int = 0       # remote records new to this device
    refreshed: int = 0     # clean local copies overwritten with server state
    conflicts: list[ReconciliationConflict] = field(default_factory=list)
    skipped: int = 0       # malformed or orphaned remote rows
    deferred: int = 0      # unknown rows held back while creates are queued


def parse_timestamp(value: str | None) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Reconciler:
    """Resolves identifiers and conflicting edits against the local store."""

    def __init__(self, store: OfflineStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Identifier binding
    # ------------------------------------------------------------------

    def bind_remote_identifier(self, collection: str, local_id: str, remote_id: str) -> None:
        """Point every local reference to ``local_id`` at ``remote_id``.

        The record, queued payloads and dependent actions are rewritten in a
        single store transaction, so readers never see a half-bound graph.
        """
        if not remote_id:
            raise ReconciliationError(f"Empty remote id for {collection} {local_id}")
        try:
            rewritten = self._store.rewrite_identifier(collection, local_id, remote_id)
        except KeyError as exc:
            raise ReconciliationError(
                f"Cannot bind {remote_id}: {collection} {local_id} is missing locally"
            ) from exc
        except ValueError as exc:
            raise ReconciliationError(f"Cannot bind {remote_id}: {exc}") from exc
        logger.info(
            "Bound %s %s -> %s (%d queued payloads rewritten)",
            collection, local_id, remote_id, rewritten,
        )

    # ------------------------------------------------------------------
    # Conflict resolution
    # ------------------------------------------------------------------

    @staticmethod
    def merge(local, remote):
        """Return whichever record was written last; the remote wins ties.

        The loser's diverging fields are discarded.
        """
        if parse_timestamp(local.updated_at) > parse_timestamp(remote.updated_at):
            return local
        return remote

    def _resolve(self, collection: str, local, remote, report: ReconciliationReport) -> None:
        winner = self.merge(local, remote)
        conflict = ReconciliationConflict(
            collection=collection,
            local_id=local.offline_id,
            remote_id=remote.remote_id,
            winner="local" if winner is local else "remote",
            local_updated_at=local.updated_at,
            remote_updated_at=remote.updated_at,
        )
        report.conflicts.append(conflict)
        logger.warning(
            "Conflicting edits on %s %s: %s wins (local %s, remote %s)",
            collection, local.offline_id, conflict.winner,
            local.updated_at, remote.updated_at,
        )
        if winner is remote:
            # Queued updates would push the discarded local state back up
            self._store.delete_pending_for([local.offline_id], kinds=list(_UPDATE_KINDS))
            self._store.cache_remote(collection, remote)

    # ------------------------------------------------------------------
    # Sync results
    # ------------------------------------------------------------------

    def apply_remote_result(self, operation: PendingSyncOperation, response: dict | None) -> None:
        """Fold one successful remote call into the local cache.

        Called before the operation leaves the queue; raising here keeps it
        queued for another attempt.
        """
        collection = operation.kind.collection

        if operation.kind == OperationKind.DELETE_ACTION:
            self._store.delete_record(ACTIONS, operation.target_id)
            return

        if operation.kind in _CREATE_KINDS:
            remote_id = str((response or {}).get("id") or "")
            self.bind_remote_identifier(collection, operation.target_id, remote_id)

        # Stays dirty if a newer edit was queued meanwhile
        self._store.mark_synced(
            collection, operation.target_id, exclude_operation_id=operation.id,
        )

    # ------------------------------------------------------------------
    # Full reconciliation pass
    # ------------------------------------------------------------------

    def reconcile_all(
        self, remote_sessions: list[dict], remote_actions: list[dict],
    ) -> ReconciliationReport:
        """Merge a full server snapshot into the local cache.

        Unknown remote records are adopted, clean local copies are refreshed,
        records dirty on both sides go through ``merge``. Local-only records
        are left for the coordinator to push.

        An unknown remote record is not adopted while a create of the same
        kind is still queued: it may be the server copy of that create whose
        response was lost, and the replay binds it to the existing local id.
        """
        report = ReconciliationReport()
        touched_sessions: set[str] = set()
        deferred_sessions: set[str] = set()
        creating_sessions = self._store.has_pending_kind(OperationKind.CREATE_SESSION)

        for raw in remote_sessions:
            try:
                remote = RemoteSession.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed remote session: %s", exc)
                report.skipped += 1
                continue
            local = self._store.find_by_remote_id(SESSIONS, remote.id)
            if local is None and creating_sessions:
                deferred_sessions.add(remote.id)
                report.deferred += 1
                continue
            if local is None:
                self._store.cache_remote(SESSIONS, remote.to_local(generate_offline_id()))
                report.adopted += 1
                continue
            incoming = remote.to_local(local.offline_id)
            if local.needs_sync:
                self._resolve(SESSIONS, local, incoming, report)
            else:
                self._store.cache_remote(SESSIONS, incoming)
                report.refreshed += 1

        for raw in remote_actions:
            try:
                remote = RemoteAction.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed remote action: %s", exc)
                report.skipped += 1
                continue
            if remote.session_id in deferred_sessions:
                report.deferred += 1
                continue
            parent = self._store.find_by_remote_id(SESSIONS, remote.session_id)
            if parent is None:
                logger.warning(
                    "Remote action %s references unknown session %s",
                    remote.id, remote.session_id,
                )
                report.skipped += 1
                continue
            touched_sessions.add(parent.offline_id)
            local = self._store.find_by_remote_id(ACTIONS, remote.id)
            if local is None and self._store.has_pending_kind(
                OperationKind.CREATE_ACTION, session_id=parent.offline_id,
            ):
                report.deferred += 1
                continue
            if local is None:
                self._store.cache_remote(
                    ACTIONS, remote.to_local(generate_offline_id(), parent.offline_id),
                )
                report.adopted += 1
                continue
            incoming = remote.to_local(local.offline_id, parent.offline_id)
            if local.needs_sync:
                self._resolve(ACTIONS, local, incoming, report)
            else:
                self._store.cache_remote(ACTIONS, incoming)
                report.refreshed += 1

        for session_id in touched_sessions:
            self._normalize_order(session_id)

        logger.info(
            "Reconciliation: %d adopted, %d refreshed, %d conflicts, %d deferred, %d skipped",
            report.adopted, report.refreshed, len(report.conflicts), report.deferred,
            report.skipped,
        )
        return report

    def _normalize_order(self, session_id: str) -> None:
        """Restore contiguous, duplicate-free order indices after a merge."""
        actions: list[OfflineAction] = self._store.list_actions(session_id)
        ordered = sorted(actions, key=lambda a: (a.order_index, a.created_at))
        for index, action in enumerate(ordered):
            if action.order_index == index:
                continue
            action.order_index = index
            self._store.put(ACTIONS, action)
            self._store.enqueue_operation(OperationKind.UPDATE_ACTION, action.to_payload())


"""
Firefly Offline Sync — Local-first session API.

The single entry point the UI uses to create and change focus sessions and
their micro-actions. Every mutation is written to the offline store and the
pending-operation log first, then the sync coordinator is signalled; the
caller never waits on the network.

A StorageFailure from the store propagates to the caller: the mutation was
not persisted and must be retried or reported to the user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from firefly.data.models import (
    ACTIONS,
    SESSIONS,
    Confidence,
    DeadLetter,
    OfflineAction,
    OfflineSession,
    OperationKind,
    SessionStatus,
    generate_offline_id,
    utc_now_iso,
)

if TYPE_CHECKING:
    from firefly.core.coordinator import SyncCoordinator
    from firefly.data.db import OfflineStore

logger = logging.getLogger(__name__)


@dataclass
class ActionDraft:
    """A micro-action as proposed by the goal breakdown, before it is stored."""

    text: str
    estimated_minutes: int | None = None
    confidence: Confidence = Confidence.MEDIUM
    is_custom: bool = False
    original_text: str | None = None


@dataclass
class SessionView:
    session: OfflineSession
    actions: list[OfflineAction] = field(default_factory=list)


class FocusSessionService:
    """Local-first API over the offline store."""

    def __init__(
        self,
        store: OfflineStore,
        coordinator: SyncCoordinator | None = None,
        user_id: str | None = None,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._user_id = user_id

    def _signal(self) -> None:
        if self._coordinator is not None:
            self._coordinator.notify()

    def _require_session(self, session_id: str) -> OfflineSession:
        session = self._store.get_session(session_id)
        if session is None:
            raise ValueError(f"Session {session_id} not found")
        return session

    def _require_action(self, action_id: str) -> OfflineAction:
        action = self._store.get_action(action_id)
        if action is None:
            raise ValueError(f"Action {action_id} not found")
        return action

    def _save_action(self, action: OfflineAction) -> None:
        action.updated_at = utc_now_iso()
        self._store.put(ACTIONS, action)
        self._store.enqueue_operation(OperationKind.UPDATE_ACTION, action.to_payload())

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(self, goal: str, actions: list[ActionDraft]) -> SessionView:
        """Create a session and its ordered actions, queued for sync."""
        goal = goal.strip()
        if not goal:
            raise ValueError("Goal must not be empty")

        session = OfflineSession(
            offline_id=generate_offline_id(),
            goal=goal,
            user_id=self._user_id,
            total_estimated_time=sum(a.estimated_minutes or 0 for a in actions),
            status=SessionStatus.ACTIVE,
        )
        stored_actions = [
            OfflineAction(
                offline_id=generate_offline_id(),
                session_id=session.offline_id,
                text=draft.text,
                order_index=index,
                estimated_minutes=draft.estimated_minutes,
                confidence=draft.confidence,
                is_custom=draft.is_custom,
                original_text=draft.original_text,
            )
            for index, draft in enumerate(actions)
        ]

        with self._store.batch():
            self._store.put(SESSIONS, session)
            self._store.enqueue_operation(OperationKind.CREATE_SESSION, session.to_payload())
            for action in stored_actions:
                self._store.put(ACTIONS, action)
                self._store.enqueue_operation(OperationKind.CREATE_ACTION, action.to_payload())

        logger.info(
            "Session %s started locally with %d actions", session.offline_id, len(stored_actions),
        )
        self._signal()
        return SessionView(session=session, actions=stored_actions)

    def update_progress(
        self,
        session_id: str,
        actual_time_spent: int,
        status: SessionStatus | str | None = None,
    ) -> OfflineSession:
        """Record time spent and, optionally, a new status."""
        session = self._require_session(session_id)
        session.actual_time_spent = actual_time_spent
        if status is not None:
            session.status = SessionStatus(status)
        session.updated_at = utc_now_iso()

        with self._store.batch():
            self._store.put(SESSIONS, session)
            self._store.enqueue_operation(OperationKind.UPDATE_SESSION, session.to_payload())
        self._signal()
        return session

    def get_session(self, session_id: str) -> SessionView | None:
        session = self._store.get_session(session_id)
        if session is None:
            return None
        return SessionView(session=session, actions=self._store.list_actions(session.offline_id))

    def list_sessions(self, limit: int | None = None) -> list[OfflineSession]:
        """Newest sessions first, at most ``limit`` of them."""
        return self._store.list_sessions(user_id=self._user_id, limit=limit)

    def purge_session(self, session_id: str) -> None:
        """Drop a session locally and mark all of its actions for deletion.

        Actions the server knows about get a queued delete; anything that
        never reached the server is simply forgotten.
        """
        session = self._require_session(session_id)
        actions = self._store.list_actions(session.offline_id)

        with self._store.batch():
            self._store.delete_pending_for(
                [session.offline_id] + [a.offline_id for a in actions],
            )
            for action in actions:
                if action.remote_id:
                    self._store.enqueue_operation(
                        OperationKind.DELETE_ACTION, action.to_payload(),
                    )
                self._store.delete_record(ACTIONS, action.offline_id)
            self._store.delete_record(SESSIONS, session.offline_id)

        logger.info("Session %s purged (%d actions)", session.offline_id, len(actions))
        self._signal()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def complete_action(self, action_id: str) -> OfflineAction:
        action = self._require_action(action_id)
        action.completed_at = utc_now_iso()
        with self._store.batch():
            self._save_action(action)
        self._signal()
        return action

    def uncomplete_action(self, action_id: str) -> OfflineAction:
        action = self._require_action(action_id)
        action.completed_at = None
        with self._store.batch():
            self._save_action(action)
        self._signal()
        return action

    def edit_action(self, action_id: str, text: str) -> OfflineAction:
        """Change an action's text, remembering the text it had before the first edit."""
        text = text.strip()
        if not text:
            raise ValueError("Action text must not be empty")
        action = self._require_action(action_id)
        if text == action.text:
            return action
        if action.original_text is None:
            action.original_text = action.text
        action.text = text
        with self._store.batch():
            self._save_action(action)
        self._signal()
        return action

    def add_action(
        self,
        session_id: str,
        text: str,
        estimated_minutes: int | None = None,
        confidence: Confidence = Confidence.MEDIUM,
    ) -> OfflineAction:
        """Append a user-written action at the end of the session."""
        session = self._require_session(session_id)
        existing = self._store.list_actions(session.offline_id)
        action = OfflineAction(
            offline_id=generate_offline_id(),
            session_id=session.offline_id,
            session_remote_id=session.remote_id,
            text=text.strip(),
            order_index=len(existing),
            estimated_minutes=estimated_minutes,
            confidence=confidence,
            is_custom=True,
        )
        with self._store.batch():
            self._store.put(ACTIONS, action)
            self._store.enqueue_operation(OperationKind.CREATE_ACTION, action.to_payload())
        self._signal()
        return action

    def remove_action(self, action_id: str) -> None:
        """Delete an action and close the gap in its siblings' order."""
        action = self._require_action(action_id)
        siblings = [
            a for a in self._store.list_actions(action.session_id)
            if a.offline_id != action.offline_id
        ]

        with self._store.batch():
            if action.remote_id:
                self._store.delete_pending_for(
                    [action.offline_id], kinds=[OperationKind.UPDATE_ACTION],
                )
                self._store.enqueue_operation(OperationKind.DELETE_ACTION, action.to_payload())
            else:
                # Never reached the server: forget the queued create too
                self._store.delete_pending_for([action.offline_id])
            self._store.delete_record(ACTIONS, action.offline_id)

            for index, sibling in enumerate(siblings):
                if sibling.order_index != index:
                    sibling.order_index = index
                    self._save_action(sibling)

        self._signal()

    def reorder_actions(self, session_id: str, ordered_ids: list[str]) -> list[OfflineAction]:
        """Apply a new display order given as a full list of action ids."""
        session = self._require_session(session_id)
        actions = self._store.list_actions(session.offline_id)
        by_id = {a.offline_id: a for a in actions}
        by_id.update({a.remote_id: a for a in actions if a.remote_id})

        if len(ordered_ids) != len(actions) or len(set(ordered_ids)) != len(ordered_ids):
            raise ValueError("ordered_ids must list every action of the session exactly once")
        try:
            ordered = [by_id[i] for i in ordered_ids]
        except KeyError as exc:
            raise ValueError(f"Unknown action {exc.args[0]} for session {session_id}") from exc
        if len({a.offline_id for a in ordered}) != len(actions):
            raise ValueError("ordered_ids must list every action of the session exactly once")

        with self._store.batch():
            for index, action in enumerate(ordered):
                if action.order_index != index:
                    action.order_index = index
                    self._save_action(action)
        self._signal()
        return ordered

    # ------------------------------------------------------------------
    # Failed changes
    # ------------------------------------------------------------------

    def list_failed(self) -> list[DeadLetter]:
        return self._store.list_dead_letters()

    def retry_failed(self, operation_id: str) -> None:
        """Send a dead-lettered change again, using the record's current state."""
        try:
            self._store.requeue_dead_letter(operation_id)
        except KeyError as exc:
            raise ValueError(f"No failed change {operation_id}") from exc
        self._signal()

    def dismiss_failed(self, operation_id: str) -> None:
        """Give up on a dead-lettered change and keep the server's version."""
        try:
            self._store.discard_dead_letter(operation_id)
        except KeyError as exc:
            raise ValueError(f"No failed change {operation_id}") from exc

    def clear_offline_data(self) -> None:
        """Forget every local session, action and unsynced change."""
        self._store.clear()
        logger.warning("All offline data cleared")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def pending_sync_count(self) -> int:
        return self._store.pending_count()

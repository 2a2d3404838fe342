"""Tests for firefly.data.models — local records and queue entries."""

import re

from firefly.data.models import (
    ACTIONS,
    SESSIONS,
    Confidence,
    OfflineAction,
    OfflineSession,
    OperationKind,
    SessionStatus,
    SyncResult,
    generate_offline_id,
)


def test_offline_id_format():
    offline_id = generate_offline_id()
    assert re.fullmatch(r"offline_\d{13}_[a-z0-9]{9}", offline_id)


def test_offline_ids_are_unique():
    assert len({generate_offline_id() for _ in range(200)}) == 200


def test_session_defaults():
    session = OfflineSession(offline_id="offline_1", goal="Write report")
    assert session.remote_id is None
    assert session.status == SessionStatus.ACTIVE
    assert session.needs_sync is True
    assert session.sync_attempts == 0
    assert session.total_estimated_time == 0


def test_session_payload_serializes_status():
    session = OfflineSession(
        offline_id="offline_1", goal="Write report", status=SessionStatus.PAUSED,
    )
    payload = session.to_payload()
    assert payload["offline_id"] == "offline_1"
    assert payload["remote_id"] is None
    assert payload["status"] == "paused"
    assert "needs_sync" not in payload


def test_action_payload_carries_parent_ids():
    action = OfflineAction(
        offline_id="offline_a",
        session_id="offline_s",
        text="Outline sections",
        order_index=0,
        confidence=Confidence.HIGH,
    )
    payload = action.to_payload()
    assert payload["session_id"] == "offline_s"
    assert payload["session_remote_id"] is None
    assert payload["confidence"] == "high"
    assert payload["order_index"] == 0


def test_operation_kind_collection():
    assert OperationKind.CREATE_SESSION.collection == SESSIONS
    assert OperationKind.UPDATE_SESSION.collection == SESSIONS
    assert OperationKind.CREATE_ACTION.collection == ACTIONS
    assert OperationKind.UPDATE_ACTION.collection == ACTIONS
    assert OperationKind.DELETE_ACTION.collection == ACTIONS


def test_sync_result_success_tracks_errors():
    result = SyncResult(synced=2)
    assert result.success is True
    result.errors.append("Failed to sync create_session: boom")
    assert result.success is False

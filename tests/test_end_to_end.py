"""End-to-end offline scenario: create while offline, reconnect, converge."""

import pytest

from firefly.core.connectivity import ConnectivityMonitor
from firefly.core.session_service import ActionDraft
from firefly.data.models import OperationKind
from firefly.ports.remote_store_port import NetworkFailure


@pytest.mark.asyncio
async def test_offline_session_converges_after_reconnect(store, remote, clock, coordinator, service):
    monitor = ConnectivityMonitor(remote, coordinator)
    remote.online = False
    assert await monitor.check() is False

    view = service.start_session(
        "Write report", [ActionDraft("Outline", 10), ActionDraft("Draft", 20)],
    )
    local_id = view.session.offline_id

    pending = list(store.list_pending())
    assert [op.kind for op in pending] == [
        OperationKind.CREATE_SESSION,
        OperationKind.CREATE_ACTION,
        OperationKind.CREATE_ACTION,
    ]
    assert (await coordinator.flush()).errors == ["Device is offline"]
    assert remote.calls == []

    # The session lands but the first action create times out
    remote.online = True
    remote.fail_next("create_action", NetworkFailure("timeout"))
    assert await monitor.check() is True
    await coordinator.flush()

    session = store.get_session(local_id)
    assert session.remote_id == "srv-1"
    remaining = list(store.list_pending())
    assert [op.kind for op in remaining] == [OperationKind.CREATE_ACTION] * 2
    assert all(op.payload["session_remote_id"] == "srv-1" for op in remaining)

    clock.advance(60)
    result = await coordinator.flush()

    assert result.synced == 2
    assert store.pending_count() == 0
    assert store.get_session(local_id).needs_sync is False
    actions = store.list_actions(local_id)
    assert all(not a.needs_sync and a.remote_id for a in actions)
    assert {remote.actions[a.remote_id]["session_id"] for a in actions} == {"srv-1"}
    assert len(remote.sessions) == 1
    assert len(remote.actions) == 2


@pytest.mark.asyncio
async def test_queue_survives_restart_and_syncs(tmp_db_path, remote):
    from firefly.core.coordinator import SyncCoordinator
    from firefly.core.session_service import FocusSessionService
    from firefly.data.db import OfflineStore

    with OfflineStore(db_path=tmp_db_path) as first:
        FocusSessionService(first).start_session("Write report", [ActionDraft("Outline")])

    with OfflineStore(db_path=tmp_db_path) as reopened:
        result = await SyncCoordinator(reopened, remote).flush()
        assert result.synced == 2
        assert reopened.pending_count() == 0

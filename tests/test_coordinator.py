"""Tests for firefly.core.coordinator — SyncCoordinator drain passes."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from firefly.core.backoff import BackoffPolicy
from firefly.core.coordinator import SyncCoordinator
from firefly.core.session_service import ActionDraft
from firefly.data.models import SESSIONS, OfflineSession, OperationKind
from firefly.ports.remote_store_port import NetworkFailure, RemoteRejection


def _queue_session(store, offline_id="offline_s1"):
    session = OfflineSession(offline_id=offline_id, goal="Write report", user_id="user-1")
    store.put(SESSIONS, session)
    return store.enqueue_operation(OperationKind.CREATE_SESSION, session.to_payload())


def _gate_create_session(remote):
    """Make remote.create_session block until the returned gate is set."""
    gate = asyncio.Event()
    entered = asyncio.Event()
    original = remote.create_session

    async def slow_create(payload, idempotency_key):
        entered.set()
        await gate.wait()
        return await original(payload, idempotency_key)

    remote.create_session = slow_create
    return gate, entered


class TestFlush:
    @pytest.mark.asyncio
    async def test_pushes_session_then_actions(self, store, remote, coordinator, service):
        view = service.start_session(
            "Write report", [ActionDraft("Outline", 10), ActionDraft("Draft", 20)],
        )

        result = await coordinator.flush()

        assert result.synced == 3
        assert result.success is True
        assert remote.methods() == ["create_session", "create_action", "create_action"]
        assert store.pending_count() == 0
        session = store.get_session(view.session.offline_id)
        assert session.remote_id == "srv-1"
        assert session.needs_sync is False
        for action in store.list_actions(session.offline_id):
            assert action.needs_sync is False
            assert remote.actions[action.remote_id]["session_id"] == "srv-1"

    @pytest.mark.asyncio
    async def test_idempotency_key_is_op_id(self, store, remote, coordinator):
        op = _queue_session(store)
        await coordinator.flush()
        assert remote.calls[0][1] == op.id

    @pytest.mark.asyncio
    async def test_offline_flush_does_nothing(self, store, remote, coordinator):
        _queue_session(store)
        coordinator.set_online(False)

        result = await coordinator.flush()

        assert result.errors == ["Device is offline"]
        assert remote.calls == []
        assert store.pending_count() == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, coordinator):
        result = await coordinator.flush()
        assert result.synced == 0
        assert result.success is True

    @pytest.mark.asyncio
    async def test_status_snapshot(self, store, coordinator):
        _queue_session(store)
        before = coordinator.status()
        assert before.pending_count == 1
        assert before.in_progress is False
        assert before.last_sync_time is None

        await coordinator.flush()

        after = coordinator.status()
        assert after.pending_count == 0
        assert after.last_sync_time is not None


class TestOrdering:
    @pytest.mark.asyncio
    async def test_update_waits_for_its_create(self, store, remote, clock, coordinator, service):
        view = service.start_session("Write report", [])
        service.update_progress(view.session.offline_id, 15)
        remote.fail_next("create_session", NetworkFailure("timeout"))

        result = await coordinator.flush()

        assert remote.methods() == ["create_session"]
        assert result.retried == 1
        assert result.skipped == 1

        clock.advance(60)
        result = await coordinator.flush()

        assert remote.methods() == ["create_session", "create_session", "update_session"]
        assert remote.calls[2][2] == "srv-1"
        assert remote.sessions["srv-1"]["actual_time_spent"] == 15
        assert result.synced == 2

    @pytest.mark.asyncio
    async def test_independent_sessions_do_not_block_each_other(self, store, remote, coordinator):
        _queue_session(store, "offline_s1")
        _queue_session(store, "offline_s2")
        remote.fail_next("create_session", NetworkFailure("timeout"))

        result = await coordinator.flush()

        assert result.synced == 1
        assert result.retried == 1
        assert len(remote.sessions) == 1

    @pytest.mark.asyncio
    async def test_delete_and_reindex_after_sync(self, store, remote, coordinator, service):
        view = service.start_session(
            "Write report", [ActionDraft("Outline"), ActionDraft("Draft")],
        )
        await coordinator.flush()
        first, second = store.list_actions(view.session.offline_id)

        service.remove_action(first.offline_id)
        result = await coordinator.flush()

        assert result.synced == 2
        assert remote.methods()[-2:] == ["delete_action", "update_action"]
        assert first.remote_id not in remote.actions
        assert remote.actions[second.remote_id]["order_index"] == 0


class TestRetries:
    @pytest.mark.asyncio
    async def test_replayed_create_does_not_duplicate(self, store, remote, clock, coordinator):
        op = _queue_session(store)
        remote.lose_response.append("create_session")

        result = await coordinator.flush()

        assert result.retried == 1
        assert len(remote.sessions) == 1
        assert store.get_session("offline_s1").remote_id is None

        clock.advance(10)
        result = await coordinator.flush()

        assert result.synced == 1
        assert len(remote.sessions) == 1
        assert store.get_session("offline_s1").remote_id == "srv-1"
        assert [key for _, key, _ in remote.calls] == [op.id, op.id]

    @pytest.mark.asyncio
    async def test_not_yet_due_op_is_skipped(self, store, remote, coordinator):
        _queue_session(store)
        remote.fail_next("create_session", NetworkFailure("timeout"))
        await coordinator.flush()

        result = await coordinator.flush()

        assert result.skipped == 1
        assert len(remote.calls) == 1

    @pytest.mark.asyncio
    async def test_backoff_schedule_then_dead_letter(self, store, remote, clock):
        notifier = AsyncMock()
        coordinator = SyncCoordinator(
            store, remote, notifier=notifier, user_id="user-1", clock=clock,
        )
        op = _queue_session(store)
        remote.fail_next("create_session", *[NetworkFailure("503") for _ in range(9)])

        delays = []
        for _ in range(8):
            result = await coordinator.flush()
            assert result.retried == 1
            queued = store.get_operation(op.id)
            delays.append(queued.next_attempt_at - clock.now)
            clock.advance(queued.next_attempt_at - clock.now)

        assert delays == [1, 2, 4, 8, 16, 32, 60, 60]
        notifier.send_message.assert_not_awaited()

        result = await coordinator.flush()

        assert result.dead_lettered == 1
        assert store.pending_count() == 0
        letters = store.list_dead_letters()
        assert letters[0].operation.id == op.id
        assert "Retries exhausted after 9 attempts" in letters[0].reason
        notifier.send_message.assert_awaited_once()
        assert notifier.send_message.await_args.args[0] == "user-1"

    @pytest.mark.asyncio
    async def test_rejection_is_terminal(self, store, remote):
        notifier = AsyncMock()
        coordinator = SyncCoordinator(store, remote, notifier=notifier)
        _queue_session(store)
        remote.fail_next("create_session", RemoteRejection("goal too long", 422))

        result = await coordinator.flush()

        assert result.dead_lettered == 1
        assert result.retried == 0
        assert store.list_dead_letters()[0].status_code == 422
        notifier.send_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_break_flush(self, store, remote):
        notifier = AsyncMock()
        notifier.send_message.side_effect = RuntimeError("channel down")
        coordinator = SyncCoordinator(store, remote, notifier=notifier)
        _queue_session(store)
        remote.fail_next("create_session", RemoteRejection("bad", 400))

        result = await coordinator.flush()

        assert result.dead_lettered == 1

    @pytest.mark.asyncio
    async def test_children_of_rejected_session_are_dead_lettered(
        self, store, remote, coordinator, service,
    ):
        service.start_session("Write report", [ActionDraft("Outline")])
        remote.fail_next("create_session", RemoteRejection("bad", 400))

        result = await coordinator.flush()

        assert result.dead_lettered == 2
        assert store.pending_count() == 0
        assert remote.methods() == ["create_session"]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_flush_returns_immediately(self, store, remote, coordinator):
        _queue_session(store)
        gate, entered = _gate_create_session(remote)

        first = asyncio.create_task(coordinator.flush())
        await entered.wait()
        assert coordinator.status().in_progress is True

        second = await coordinator.flush()
        assert second.synced == 0
        assert second.errors == []

        gate.set()
        result = await first
        assert result.synced == 1

    @pytest.mark.asyncio
    async def test_connectivity_loss_cancels_drain(self, store, remote, coordinator):
        op = _queue_session(store)
        gate, entered = _gate_create_session(remote)

        first = asyncio.create_task(coordinator.flush())
        await entered.wait()
        coordinator.set_online(False)
        result = await first

        assert "Connectivity lost during sync" in result.errors
        queued = store.get_operation(op.id)
        assert queued is not None
        assert queued.attempts == 1
        assert remote.sessions == {}

    @pytest.mark.asyncio
    async def test_connectivity_loss_on_last_attempt_dead_letters(self, store, remote, clock):
        coordinator = SyncCoordinator(
            store, remote, policy=BackoffPolicy(max_attempts=1), clock=clock,
        )
        op = _queue_session(store)
        store.record_attempt(op, next_attempt_at=0)
        gate, entered = _gate_create_session(remote)

        first = asyncio.create_task(coordinator.flush())
        await entered.wait()
        coordinator.set_online(False)
        result = await first

        assert result.dead_lettered == 1
        assert store.pending_count() == 0
        letters = store.list_dead_letters()
        assert letters[0].operation.id == op.id
        assert "Retries exhausted after 2 attempts" in letters[0].reason

    @pytest.mark.asyncio
    async def test_reconnect_triggers_flush(self, store, remote, coordinator, service):
        coordinator.set_online(False)
        service.start_session("Write report", [])
        runner = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0.05)
        assert remote.calls == []

        coordinator.set_online(True)
        for _ in range(50):
            if store.pending_count() == 0:
                break
            await asyncio.sleep(0.02)

        assert store.pending_count() == 0
        coordinator.stop()
        await asyncio.wait_for(runner, timeout=1)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_adopts_server_state(self, store, remote, coordinator):
        remote.sessions["srv-7"] = {
            "id": "srv-7", "user_id": "user-1", "goal": "Plan week",
            "status": "active", "created_at": "2025-03-01T09:00:00+00:00",
        }
        remote.actions["act-8"] = {
            "id": "act-8", "session_id": "srv-7", "text": "List tasks", "order_index": 0,
        }

        report = await coordinator.reconcile("user-1")

        assert report.adopted == 2
        session = store.get_session("srv-7")
        assert session.goal == "Plan week"
        assert store.list_actions(session.offline_id)[0].remote_id == "act-8"

    @pytest.mark.asyncio
    async def test_lost_create_response_is_not_adopted_twice(
        self, store, remote, clock, coordinator, service,
    ):
        view = service.start_session("Write report", [])
        remote.lose_response.append("create_session")
        await coordinator.flush()

        report = await coordinator.reconcile("user-1")

        assert report.deferred == 1
        assert report.adopted == 0
        assert len(store.list_sessions()) == 1

        clock.advance(10)
        result = await coordinator.flush()

        assert result.synced == 1
        sessions = store.list_sessions()
        assert len(sessions) == 1
        assert sessions[0].offline_id == view.session.offline_id
        assert sessions[0].remote_id == "srv-1"
        assert len(remote.sessions) == 1

        report = await coordinator.reconcile("user-1")
        assert report.refreshed == 1
        assert report.deferred == 0
        assert len(store.list_sessions()) == 1

    @pytest.mark.asyncio
    async def test_offline_returns_none(self, remote, coordinator):
        coordinator.set_online(False)
        assert await coordinator.reconcile("user-1") is None
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_fetch_failure_returns_none(self, remote, coordinator):
        remote.fail_next("list_sessions", NetworkFailure("timeout"))
        assert await coordinator.reconcile("user-1") is None

    @pytest.mark.asyncio
    async def test_requires_owner(self, coordinator):
        with pytest.raises(ValueError):
            await coordinator.reconcile()

"""Sync engine factory — wires the store, adapters and coordinator from config.

Reads ``settings`` once; everything it builds receives its configuration
through constructor arguments.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from firefly.adapters.http_store import HttpRemoteStore
from firefly.adapters.log_notifier import LoggingNotifier
from firefly.core.backoff import BackoffPolicy
from firefly.core.connectivity import ConnectivityMonitor
from firefly.core.coordinator import SyncCoordinator
from firefly.core.reconciler import Reconciler
from firefly.core.session_service import FocusSessionService
from firefly.data.db import OfflineStore
from firefly.integrations.auth import AuthClient, FileTokenProvider

logger = logging.getLogger(__name__)


@dataclass
class SyncEngine:
    """Explicitly constructed handle over every sync component."""

    store: OfflineStore
    remote: HttpRemoteStore
    coordinator: SyncCoordinator
    service: FocusSessionService
    monitor: ConnectivityMonitor

    def open(self) -> SyncEngine:
        self.store.open()
        return self

    async def close(self) -> None:
        """Stop background work, push what we can, close storage."""
        self.monitor.stop()
        self.coordinator.stop()
        if self.coordinator.is_online:
            result = await self.coordinator.flush()
            logger.info(
                "Final flush: %d synced, %d still pending",
                result.synced, self.store.pending_count(),
            )
        self.store.close()


def create_sync_engine(db_path: str | None = None) -> SyncEngine:
    """Build a SyncEngine from settings. Call ``open()`` before use."""
    from firefly.config import settings

    store = OfflineStore(db_path=db_path or settings.DATABASE_PATH)
    tokens = FileTokenProvider(
        settings.TOKEN_PATH,
        auth_client=AuthClient(settings.FIREFLY_AUTH_URL, api_key=settings.FIREFLY_API_KEY),
    )
    remote = HttpRemoteStore(
        settings.FIREFLY_API_URL,
        tokens,
        api_key=settings.FIREFLY_API_KEY,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    user_id = settings.FIREFLY_USER_ID or None
    coordinator = SyncCoordinator(
        store,
        remote,
        reconciler=Reconciler(store),
        notifier=LoggingNotifier(),
        policy=BackoffPolicy(
            base_delay=settings.SYNC_BASE_DELAY_SECONDS,
            max_delay=settings.SYNC_MAX_DELAY_SECONDS,
            max_attempts=settings.SYNC_MAX_ATTEMPTS,
        ),
        fan_out=settings.SYNC_FAN_OUT,
        sync_interval=settings.SYNC_INTERVAL_SECONDS,
        reconnect_delay=settings.RECONNECT_DELAY_SECONDS,
        user_id=user_id,
    )
    return SyncEngine(
        store=store,
        remote=remote,
        coordinator=coordinator,
        service=FocusSessionService(store, coordinator, user_id=user_id),
        monitor=ConnectivityMonitor(
            remote, coordinator, interval=settings.CONNECTIVITY_CHECK_SECONDS,
        ),
    )


async def run_sync_daemon() -> None:
    """Keep the offline store in sync until cancelled."""
    from firefly.config import settings

    engine = create_sync_engine().open()
    coordinator = engine.coordinator

    # App resume: push queued work first so lost create responses get bound,
    # then fold in whatever changed server-side while we were away
    if await engine.monitor.check():
        await coordinator.flush()
        if settings.FIREFLY_USER_ID:
            await coordinator.reconcile(settings.FIREFLY_USER_ID)

    tasks = [
        asyncio.create_task(engine.monitor.run()),
        asyncio.create_task(coordinator.run()),
    ]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await engine.close()

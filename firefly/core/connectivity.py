"""
Firefly Offline Sync — Connectivity monitor.

Polls the remote store's health endpoint and feeds the result into the
sync coordinator, which flushes on reconnect and cancels on disconnect.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from firefly.core.coordinator import SyncCoordinator
    from firefly.ports.remote_store_port import RemoteStorePort

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Periodic reachability probe driving ``SyncCoordinator.set_online``."""

    def __init__(
        self,
        remote: RemoteStorePort,
        coordinator: SyncCoordinator,
        interval: float = 30.0,
    ) -> None:
        self._remote = remote
        self._coordinator = coordinator
        self._interval = interval
        self._stopped = asyncio.Event()

    async def check(self) -> bool:
        online = await self._remote.ping()
        self._coordinator.set_online(online)
        return online

    async def run(self) -> None:
        self._stopped.clear()
        while not self._stopped.is_set():
            await self.check()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()

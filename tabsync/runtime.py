from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from .config import TabSyncConfig, load_config
from .engine import SyncEngine
from .host import TabHost
from .state import SyncStatus
from .storage import LOCAL_AREA, SHARED_AREA, SqliteKeyValueStore, StoreWatcher

logger = logging.getLogger(__name__)


class SyncRuntime:
    """An engine wired to the local and shared SQLite stores."""

    def __init__(
        self,
        host: TabHost,
        *,
        config: TabSyncConfig | None = None,
        on_status: Callable[[SyncStatus], None] | None = None,
    ) -> None:
        self.config = config or load_config()
        self.local_store = SqliteKeyValueStore(self.config.local_db_path)
        self.shared_store = SqliteKeyValueStore(self.config.shared_db_path)
        self.engine = SyncEngine(
            host,
            self.local_store,
            self.shared_store,
            config=self.config,
            on_status=on_status,
        )
        self.watchers = [
            StoreWatcher(
                self.local_store,
                self.engine.on_storage_changed,
                area=LOCAL_AREA,
                interval_ms=self.config.watch_interval_ms,
            ),
            StoreWatcher(
                self.shared_store,
                self.engine.on_storage_changed,
                area=SHARED_AREA,
                interval_ms=self.config.watch_interval_ms,
            ),
        ]

    async def start(self) -> None:
        await self.engine.start()
        for watcher in self.watchers:
            watcher.start()
        logger.info("tabsync runtime started as peer %s", self.engine.peer_id)

    async def stop(self) -> None:
        for watcher in self.watchers:
            await watcher.stop()
        try:
            await self.engine.stop()
        finally:
            self.local_store.close()
            self.shared_store.close()
        logger.info("tabsync runtime stopped")


async def run_runtime(
    host: TabHost,
    *,
    config: TabSyncConfig | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    runtime = SyncRuntime(host, config=config)
    stop = stop_event or asyncio.Event()
    await runtime.start()
    try:
        await stop.wait()
    finally:
        with contextlib.suppress(asyncio.CancelledError):
            await runtime.stop()

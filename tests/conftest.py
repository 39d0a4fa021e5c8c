from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import pytest

from tabsync.config import TabSyncConfig
from tabsync.engine import SyncEngine
from tabsync.host import TAB_COMPLETE, TAB_LOADING, HostTab
from tabsync.storage import LOCAL_AREA, SHARED_AREA, ChangeListener, StorageChange

START = 1_700_000_000_000


@pytest.fixture(autouse=True)
def _isolate_tabsync_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TABSYNC_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("TABSYNC_LOCAL_DB", str(tmp_path / "local.sqlite"))
    monkeypatch.setenv("TABSYNC_SHARED_DB", str(tmp_path / "shared.sqlite"))
    for name in ("TABSYNC_LOG_LEVEL", "TABSYNC_START_DURATION_MS", "TABSYNC_WRITE_DELAY_MS"):
        monkeypatch.delenv(name, raising=False)


def fast_config(**overrides: Any) -> TabSyncConfig:
    values: dict[str, Any] = {
        "start_duration_ms": 0,
        "write_delay_ms": 5,
        "redirect_delay_ms": 5,
        "step_delay_ms": 1,
        "clean_recent_interval_ms": 3_600_000,
        "clean_recycle_interval_ms": 3_600_000,
    }
    values.update(overrides)
    return TabSyncConfig(**values)


class FakeClock:
    def __init__(self, now: int = START) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class MemoryStore:
    """Dict-backed store that notifies subscribers the way the host's storage does."""

    def __init__(self, data: dict[str, Any] | None = None, *, area: str) -> None:
        self.data: dict[str, Any] = data if data is not None else {}
        self.area = area
        self.writes: list[dict[str, Any]] = []
        self.listeners: list[ChangeListener] = []
        self.tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, listener: ChangeListener) -> None:
        self.listeners.append(listener)

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self.data.get(key))

    async def set(self, values: dict[str, Any]) -> None:
        changes = {
            key: StorageChange(self.data.get(key), copy.deepcopy(value))
            for key, value in values.items()
        }
        self.data.update(copy.deepcopy(values))
        self.writes.append(copy.deepcopy(values))
        loop = asyncio.get_running_loop()
        for listener in self.listeners:
            task = loop.create_task(listener(changes, self.area))
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)


class FakeHost:
    """In-memory browser: tabs in one normal window."""

    def __init__(self, urls: list[str] | None = None, *, window: bool = True) -> None:
        self.tabs: dict[int, HostTab] = {}
        self.window = window
        self.available = True
        self.engine: SyncEngine | None = None
        self.created: list[str] = []
        self.removed: list[int] = []
        self.min_open: int | None = None
        self._next_id = 1
        for url in urls or []:
            self.open_tab(url)

    def _new_id(self) -> int:
        tab_id = self._next_id
        self._next_id += 1
        return tab_id

    def urls(self) -> list[str]:
        return [tab.url or "" for tab in self.tabs.values()]

    def find(self, url: str) -> HostTab:
        for tab in self.tabs.values():
            if tab.url == url:
                return tab
        raise KeyError(url)

    def open_tab(self, url: str, *, pinned: bool = False, status: str = TAB_COMPLETE) -> HostTab:
        """Add a tab that was already open before the engine came up."""

        tab = HostTab(id=self._new_id(), url=url, status=status, pinned=pinned)
        self.tabs[tab.id] = tab
        return tab

    def user_open(self, url: str, *, pinned: bool = False) -> HostTab:
        tab = HostTab(
            id=self._new_id(), url=None, status=TAB_LOADING, pinned=pinned, pending_url=url
        )
        self.tabs[tab.id] = tab
        assert self.engine is not None
        self.engine.on_tab_created(tab)
        self.engine.on_tab_updated(tab.id, TAB_LOADING, replace(tab, url=url))
        return self.finish_loading(tab.id, url)

    def navigate(self, tab_id: int, url: str) -> HostTab:
        assert self.engine is not None
        tab = replace(self.tabs[tab_id], url=url, status=TAB_LOADING)
        self.tabs[tab_id] = tab
        self.engine.on_tab_updated(tab_id, TAB_LOADING, tab)
        return self.finish_loading(tab_id, url)

    def finish_loading(self, tab_id: int, url: str) -> HostTab:
        assert self.engine is not None
        tab = replace(self.tabs[tab_id], url=url, status=TAB_COMPLETE, pending_url=None)
        self.tabs[tab_id] = tab
        self.engine.on_tab_updated(tab_id, TAB_COMPLETE, tab)
        return tab

    def user_close(self, tab_id: int) -> None:
        del self.tabs[tab_id]
        assert self.engine is not None
        self.engine.on_tab_removed(tab_id, window_closing=False)

    async def query_tabs(self) -> list[HostTab] | None:
        if not self.available:
            return None
        return list(self.tabs.values())

    async def create_tab(self, url: str, *, pinned: bool = False, active: bool = False) -> HostTab:
        tab = HostTab(id=self._new_id(), url=url, status=TAB_COMPLETE, pinned=pinned)
        self.tabs[tab.id] = tab
        self.created.append(url)
        if self.engine is not None:
            self.engine.on_tab_updated(tab.id, TAB_COMPLETE, tab)
        return tab

    async def remove_tab(self, tab_id: int) -> None:
        del self.tabs[tab_id]
        self.removed.append(tab_id)
        open_count = len(self.tabs)
        self.min_open = open_count if self.min_open is None else min(self.min_open, open_count)
        if self.engine is not None:
            self.engine.on_tab_removed(tab_id, window_closing=False)

    async def has_normal_window(self) -> bool:
        return self.window


@dataclass
class Peer:
    engine: SyncEngine
    host: FakeHost
    local: MemoryStore


class Network:
    """Peers sharing one synced store, all driven by the same fake clock."""

    def __init__(self) -> None:
        self.clock = FakeClock()
        self.shared = MemoryStore(area=SHARED_AREA)
        self.peers: list[Peer] = []

    def add_peer(
        self,
        name: str,
        urls: list[str] | None = None,
        *,
        enabled: bool = True,
        window: bool = True,
        **config: Any,
    ) -> Peer:
        host = FakeHost(urls, window=window)
        local = MemoryStore({"peerId": name, "autoSyncEnabled": enabled}, area=LOCAL_AREA)
        engine = SyncEngine(host, local, self.shared, config=fast_config(**config), clock=self.clock)
        host.engine = engine
        local.subscribe(engine.on_storage_changed)
        self.shared.subscribe(engine.on_storage_changed)
        peer = Peer(engine=engine, host=host, local=local)
        self.peers.append(peer)
        return peer

    def _quiet(self) -> bool:
        stores = [self.shared, *(peer.local for peer in self.peers)]
        if any(store.tasks for store in stores):
            return False
        for peer in self.peers:
            engine = peer.engine
            if engine.writer.pending or engine.settler.pending:
                return False
            if engine.queue.pending or engine.queue.running:
                return False
        return True

    async def settle(self, rounds: int = 100) -> None:
        quiet_rounds = 0
        for _ in range(rounds):
            await asyncio.sleep(0.01)
            for peer in self.peers:
                await peer.engine.drain()
            quiet_rounds = quiet_rounds + 1 if self._quiet() else 0
            if quiet_rounds >= 3:
                return
        raise AssertionError("peers did not settle")

    async def close(self) -> None:
        for peer in self.peers:
            await peer.engine.stop()


@pytest.fixture
def network() -> Network:
    return Network()


@pytest.fixture
def make_host() -> type[FakeHost]:
    return FakeHost

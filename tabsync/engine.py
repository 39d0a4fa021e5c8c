from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

from .caches import RecentlyClosed, RecycleBin
from .config import TabSyncConfig
from .diff import diff_tabs
from .host import (
    NORMAL_WINDOW,
    TAB_COMPLETE,
    TAB_LOADING,
    TAB_UNLOADED,
    HostTab,
    TabHost,
    scoped_tabs,
)
from .mutation_queue import MutationQueue
from .reconcile import advance_time, build_record, plan_merge
from .record import RecordEntry, SyncRecord, compress_record, describe_record, load_record
from .redirects import RedirectResolver
from .state import (
    EngineState,
    SyncStatus,
    evaluate,
    status_of,
    with_auto_sync,
    with_busy,
    with_settled,
    with_window,
)
from .storage import LOCAL_AREA, SHARED_AREA, KeyValueStore, StorageChange
from .tracker import TabTracker
from .urls import PLACEHOLDER_URL
from .utils import format_time, now_ms
from .writer import Coalescer

logger = logging.getLogger(__name__)

SYNC_RECORD_KEY = "syncRecord"

# setting name -> (storage area, default factory)
SETTINGS: dict[str, tuple[str, Callable[[], Any]]] = {
    "peerId": (LOCAL_AREA, lambda: uuid4().hex[:16]),
    "autoSyncEnabled": (LOCAL_AREA, lambda: False),
    "syncAll": (SHARED_AREA, lambda: True),
    "sourceSyncTimes": (LOCAL_AREA, dict),
    "destSyncTimes": (LOCAL_AREA, dict),
    "tabMap": (LOCAL_AREA, dict),
}

MESSAGES = ("start", "stop", "syncAll", "syncPinned", "saveTabs", "restoreTabs")

# Local key other processes write to ask a running engine for a publish or merge.
SYNC_REQUEST_KEY = "syncRequest"
REQUEST_ACTIONS = ("saveTabs", "restoreTabs")


@dataclass(frozen=True)
class _WriteRequest:
    tabs: list[HostTab]
    time: int


def _coerce_times(value: object) -> dict[str, int]:
    if not isinstance(value, dict):
        return {}
    return {
        str(peer): int(stamp) for peer, stamp in value.items() if isinstance(stamp, int | float)
    }


def sync_request(action: str, *, time: int) -> dict[str, Any]:
    if action not in REQUEST_ACTIONS:
        raise ValueError(f"unknown sync request {action!r}")
    return {"action": action, "time": time}


def request_action(value: object) -> str | None:
    if not isinstance(value, dict):
        return None
    action = value.get("action")
    return action if action in REQUEST_ACTIONS else None


class SyncEngine:
    """Keeps the open tabs of this peer converging with a shared sync record."""

    def __init__(
        self,
        host: TabHost,
        local_store: KeyValueStore,
        shared_store: KeyValueStore,
        *,
        config: TabSyncConfig | None = None,
        clock: Callable[[], int] = now_ms,
        on_status: Callable[[SyncStatus], None] | None = None,
    ) -> None:
        self.host = host
        self.local_store = local_store
        self.shared_store = shared_store
        self.config = config or TabSyncConfig()
        self.clock = clock
        self.on_status = on_status
        self.started_at = clock()

        self.peer_id = ""
        self.source_sync_times: dict[str, int] = {}
        self.dest_sync_times: dict[str, int] = {}
        self.tracker = TabTracker()
        self.recent = RecentlyClosed()
        self.recycle = RecycleBin()
        self.resolver = RedirectResolver(
            self.tracker, self.recent, redirect_delay_ms=self.config.redirect_delay_ms
        )

        self.state = EngineState()
        self._status = status_of(self.state)
        self.queue = MutationQueue(
            step_delay_ms=self.config.step_delay_ms,
            settled=lambda: self.state.tabs_settled,
            on_unsettled=self._request_settle_check,
            allowed=lambda: self.state.sync_allowed,
            on_busy=lambda busy: self._set_state(with_busy(self.state, busy)),
        )
        self.writer: Coalescer[_WriteRequest] = Coalescer(
            self.config.write_delay_ms, self._write_tabs, name="write"
        )
        self.settler: Coalescer[None] = Coalescer(
            self.config.redirect_delay_ms, self._check_settled, name="settle"
        )
        self._periodic: list[asyncio.Task[None]] = []

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        logger.debug("-----starting up-----")
        await self._load_settings()
        await self._reuse_recycled_tabs()
        await self._refresh_window_present()
        self._update_sync_allowed()
        self._periodic = [
            asyncio.create_task(
                self._run_periodic(self._clean_recent, self.config.clean_recent_interval_ms)
            ),
            asyncio.create_task(
                self._run_periodic(self.clean_recycle, self.config.clean_recycle_interval_ms)
            ),
        ]

    async def stop(self) -> None:
        for task in self._periodic:
            task.cancel()
        for task in self._periodic:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._periodic = []
        self.settler.cancel()
        self.queue.close()
        await self.writer.flush()

    async def drain(self, timeout_s: float = 5.0) -> None:
        """Wait until no queued step, pending write or settle check remains."""

        async def _wait() -> None:
            while True:
                await self.queue.join()
                await asyncio.sleep(0)
                if self.writer.pending or self.settler.pending:
                    await asyncio.sleep(0.001)
                    continue
                if self.queue.pending == 0 and self.queue.running is None:
                    return

        await asyncio.wait_for(_wait(), timeout_s)

    @property
    def status(self) -> SyncStatus:
        return self._status

    # -- settings ----------------------------------------------------------

    def _store(self, area: str) -> KeyValueStore:
        return self.shared_store if area == SHARED_AREA else self.local_store

    async def _load_settings(self) -> None:
        for name, (area, default) in SETTINGS.items():
            store = self._store(area)
            value = await store.get(name)
            if value is None:
                value = default()
                await store.set({name: value})
            logger.debug("[init] %s: %s", name, value)
            self._apply_setting(name, value)

    def _apply_setting(self, name: str, value: Any) -> None:
        if name == "peerId":
            self.peer_id = str(value)
        elif name == "autoSyncEnabled":
            self._set_state(with_auto_sync(self.state, bool(value)))
        elif name == "syncAll":
            self._set_state(replace(self.state, sync_all=bool(value)))
        elif name == "sourceSyncTimes":
            self.source_sync_times = _coerce_times(value)
        elif name == "destSyncTimes":
            self.dest_sync_times = _coerce_times(value)
        elif name == "tabMap":
            if isinstance(value, dict):
                stashed = self.recycle.stash_map(value)
                logger.debug("[init] recycled %s tab records", stashed)

    async def _set_setting(self, name: str, value: Any) -> None:
        area, _default = SETTINGS[name]
        await self._store(area).set({name: value})
        logger.debug("[set_setting] %s: %s", name, value)
        self._apply_setting(name, value)
        self._update_sync_allowed()

    async def set_auto_sync(self, enabled: bool) -> None:
        await self._set_setting("autoSyncEnabled", enabled)

    async def set_sync_all(self, sync_all: bool) -> None:
        await self._set_setting("syncAll", sync_all)

    async def handle_message(self, message: str) -> None:
        logger.debug("[handle_message] %s", message)
        if message == "start":
            await self.set_auto_sync(True)
        elif message == "stop":
            await self.set_auto_sync(False)
        elif message == "syncAll":
            await self.set_sync_all(True)
        elif message == "syncPinned":
            await self.set_sync_all(False)
        elif message == "saveTabs":
            self.save_tabs()
        elif message == "restoreTabs":
            self.restore_tabs()
        else:
            logger.warning("unknown message %r", message)

    # -- state -------------------------------------------------------------

    def _set_state(self, state: EngineState) -> None:
        self.state = state
        status = status_of(state)
        if status == self._status:
            return
        self._status = status
        if self.on_status is not None:
            try:
                self.on_status(status)
            except Exception:
                logger.exception("status callback failed")

    def _update_sync_allowed(self) -> None:
        state, run_merge = evaluate(self.state)
        logger.debug(
            "[sync_allowed] window=%s settled=%s -> %s",
            state.normal_window_present,
            state.tabs_settled,
            state.sync_allowed,
        )
        self._set_state(state)
        if run_merge:
            self.restore_tabs()

    async def _refresh_window_present(self) -> None:
        present = await self.host.has_normal_window()
        self._set_state(with_window(self.state, present))

    # -- host events -------------------------------------------------------

    def on_window_created(self, window_type: str) -> None:
        logger.debug("[window_created] type %s", window_type)
        if window_type == NORMAL_WINDOW:
            self._set_state(with_window(self.state, True))
            self._update_sync_allowed()

    async def on_window_removed(self) -> None:
        logger.debug("[window_removed]")
        await self._refresh_window_present()
        self._update_sync_allowed()

    def on_tab_created(self, tab: HostTab) -> None:
        if not self.state.auto_sync_enabled:
            return
        logger.debug("[tab_created] id %s url %s pending %s", tab.id, tab.url, tab.pending_url)
        if not tab.pending_url and tab.status == TAB_UNLOADED:
            self._reuse_recycled(tab)
        self._set_state(with_settled(self.state, False))

    def on_tab_updated(self, tab_id: int, status: str, tab: HostTab) -> None:
        if not self.state.auto_sync_enabled:
            return
        now = self.clock()
        if status == TAB_LOADING:
            self.resolver.on_loading(tab_id, tab.url, now=now)
            self._set_state(with_settled(self.state, False))
        elif status == TAB_COMPLETE:
            self.resolver.on_complete(tab_id, tab.url or "", now=now)
            self._request_settle_check()

    def on_tab_removed(self, tab_id: int, *, window_closing: bool) -> None:
        if not self.state.auto_sync_enabled:
            return
        logger.debug("[tab_removed] id %s window closing %s", tab_id, window_closing)
        if window_closing:
            item = self.tracker.peek(tab_id)
            if item is not None:
                self.recycle.stash(replace(item, redirect_chain={}))
            return
        item = self.tracker.pop(tab_id)
        if item is not None and not item.sync_deleting:
            self.recent.track(
                [item.canonical_url, item.redirect_target, item.url], now=self.clock()
            )
        self._request_settle_check()

    def on_redirect(self, tab_id: int, source_url: str, target_url: str) -> None:
        if not self.state.auto_sync_enabled:
            return
        self.resolver.on_redirect(tab_id, source_url, target_url)

    async def on_storage_changed(self, changes: dict[str, StorageChange], area: str) -> None:
        if area == LOCAL_AREA:
            await self._on_local_changed(changes)
        elif area == SHARED_AREA:
            await self._on_shared_changed(changes)

    async def _on_local_changed(self, changes: dict[str, StorageChange]) -> None:
        change = changes.get("autoSyncEnabled")
        if change is not None and change.new_value is not None:
            enabled = bool(change.new_value)
            if enabled != self.state.auto_sync_enabled:
                self._apply_setting("autoSyncEnabled", enabled)
                self._update_sync_allowed()
        change = changes.get(SYNC_REQUEST_KEY)
        if change is None or change.new_value is None:
            return
        action = request_action(change.new_value)
        if action is None:
            logger.warning("ignoring sync request %r", change.new_value)
            return
        logger.debug("[storage_changed] sync request %s", action)
        await self.handle_message(action)

    async def _on_shared_changed(self, changes: dict[str, StorageChange]) -> None:
        # Scope is shared by all peers and applies while disabled too.
        change = changes.get("syncAll")
        if change is not None and change.new_value is not None:
            logger.debug("[storage_changed] syncAll %s -> %s", change.old_value, change.new_value)
            if bool(change.new_value) != self.state.sync_all:
                self._apply_setting("syncAll", bool(change.new_value))
                self._update_sync_allowed()
        if not self.state.auto_sync_enabled:
            return
        change = changes.get(SYNC_RECORD_KEY)
        if change is None:
            return
        record = load_record(change.new_value)
        if record is None:
            logger.debug("[storage_changed] no usable sync record; publishing local tabs")
            self.save_tabs()
        elif record.author_peer_id == self.peer_id:
            logger.debug("[storage_changed] skipping change from self")
        else:
            self.queue.submit("merge_record", lambda: self._merge(record))

    # -- recycling ---------------------------------------------------------

    def _reuse_recycled(self, tab: HostTab) -> None:
        item = self.recycle.reuse(tab.url)
        if item is not None:
            self.tracker.adopt(tab.id, item)
            logger.debug("[recycle] tab %s reuses record %s", tab.id, item)

    async def _reuse_recycled_tabs(self) -> None:
        tabs = await self._query_scoped()
        for tab in tabs or []:
            self._reuse_recycled(tab)

    def _clean_recent(self) -> None:
        self.recent.purge(now=self.clock(), window_ms=self.config.recreate_delay_ms)

    async def clean_recycle(self) -> None:
        now = self.clock()
        max_age = self.config.recycle_duration_ms
        self.recycle.purge(now=now, max_age_ms=max_age)
        tabs = await self.host.query_tabs()
        if tabs is None:
            return
        removed = self.tracker.purge((tab.id for tab in tabs), now=now, max_age_ms=max_age)
        if removed:
            logger.debug("[clean_recycle] dropped %s stale tab records", removed)

    async def _run_periodic(self, job: Callable[[], Awaitable[None] | None], interval_ms: int) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000.0)
            try:
                result = job()
                if result is not None:
                    await result
            except Exception:
                logger.exception("periodic job failed")

    # -- settling ----------------------------------------------------------

    def _request_settle_check(self) -> None:
        self.settler.schedule(None)

    async def _check_settled(self, _payload: None) -> None:
        tabs = await self._query_scoped()
        if tabs is None:
            logger.debug("[settle] tab query returned nothing")
            return
        for tab in tabs:
            if tab.status == TAB_LOADING:
                logger.debug("[settle] tab %s is still loading", tab.id)
                self._set_state(with_settled(self.state, False))
                return
        self._set_state(with_settled(self.state, True))
        self.save_tabs()
        self._update_sync_allowed()

    # -- sync operations ---------------------------------------------------

    async def _query_scoped(self) -> list[HostTab] | None:
        tabs = await self.host.query_tabs()
        if tabs is None:
            return None
        return scoped_tabs(tabs, sync_all=self.state.sync_all)

    async def _read_record(self) -> SyncRecord | None:
        return load_record(await self.shared_store.get(SYNC_RECORD_KEY))

    def save_tabs(self) -> asyncio.Future[bool]:
        logger.debug("[save_tabs] triggered")
        return self.queue.submit("publish", self._publish)

    def restore_tabs(self) -> asyncio.Future[bool]:
        logger.debug("[restore_tabs] triggered")
        return self.queue.submit("restore", self._restore)

    async def _publish(self) -> None:
        record = await self._read_record()
        if record is None:
            await self._publish_directly(None, [])
        else:
            await self._publish_directly(record.author_peer_id, record.entries)

    async def _restore(self) -> None:
        record = await self._read_record()
        if record is None:
            await self._publish_directly(None, [])
        else:
            await self._merge(record)

    async def _publish_directly(self, author: str | None, entries: list[RecordEntry]) -> None:
        logger.debug("[publish] comparing with %s tabs from %s", len(entries), author)
        tabs = await self._query_scoped()
        if not tabs:
            logger.debug("[publish] tab query returned nothing")
            return
        if not self.state.sync_allowed:
            logger.debug("[publish] syncing not allowed")
            return
        diff = diff_tabs(tabs, entries, self.tracker)
        if not diff.empty:
            await self.writer.schedule(_WriteRequest(tabs=diff.current, time=self.clock()))
            return
        logger.debug("[publish] no diff between stored and current tabs")
        if author and author != self.peer_id:
            advance_time(self.dest_sync_times, author, self.clock())

    async def _write_tabs(self, request: _WriteRequest) -> None:
        record = build_record(
            request.tabs,
            self.tracker,
            local_peer_id=self.peer_id,
            write_time=request.time,
            source_sync_times=self.source_sync_times,
        )
        await self.shared_store.set({SYNC_RECORD_KEY: compress_record(record)})
        await self._persist_state()
        logger.debug("[write] tabs saved:\n%s", describe_record(record, local_peer_id=self.peer_id))

    async def _persist_state(self) -> None:
        await self.local_store.set(
            {
                "tabMap": self.tracker.snapshot(),
                "sourceSyncTimes": dict(self.source_sync_times),
                "destSyncTimes": dict(self.dest_sync_times),
            }
        )

    async def _merge(self, record: SyncRecord) -> None:
        logger.debug("[merge] record:\n%s", describe_record(record, local_peer_id=self.peer_id))
        if record.author_peer_id == self.peer_id:
            logger.debug("[merge] ignoring our own record")
            return
        all_tabs = await self.host.query_tabs()
        if all_tabs is None:
            logger.debug("[merge] tab query returned nothing")
            return
        if not self.state.sync_allowed:
            logger.debug("[merge] syncing not allowed")
            return
        diff = diff_tabs(scoped_tabs(all_tabs, sync_all=self.state.sync_all), record.entries, self.tracker)
        plan = plan_merge(
            diff,
            record,
            tracker=self.tracker,
            recent=self.recent,
            local_peer_id=self.peer_id,
            dest_sync_times=self.dest_sync_times,
            started_at=self.started_at,
            now=self.clock(),
            recreate_delay_ms=self.config.recreate_delay_ms,
            start_duration_ms=self.config.start_duration_ms,
        )
        logger.debug(
            "[merge] %s creates, %s removals, sync time %s",
            len(plan.creates),
            len(plan.removals),
            format_time(plan.sync_time),
        )
        tab_count = len(all_tabs)
        tab_count += await self._create_tabs(plan.creates)
        if not await self._remove_tabs(plan.removals, tab_count):
            # Retried on the next merge; the record is not marked as seen.
            await self._persist_state()
            return
        advance_time(self.source_sync_times, record.author_peer_id, record.write_time)
        await self._persist_state()

    async def _create_tabs(self, entries: list[RecordEntry]) -> int:
        created = 0
        for entry in entries:
            logger.debug("[create_tabs] creating %s", entry.url)
            tab = await self.host.create_tab(entry.url, pinned=entry.pinned, active=False)
            item = self.tracker.get(tab.id)
            item.canonical_url = entry.url
            item.provenance = entry.provenance
            logger.debug("[create_tabs] created %s from %s", tab.id, entry.provenance)
            created += 1
        return created

    async def _remove_tabs(self, tabs: list[HostTab], tab_count: int) -> bool:
        for tab in tabs:
            if not self.state.sync_allowed:
                logger.debug("[remove_tabs] syncing no longer allowed; keeping %s", tab.id)
                return False
            self.tracker.get(tab.id).sync_deleting = True
            tab_count -= 1
            if tab_count <= 0:
                # Never close the last tab; the host would go away with it.
                await self.host.create_tab(PLACEHOLDER_URL, active=False)
                tab_count += 1
                logger.debug("[remove_tabs] added placeholder before removing last tab")
            await self.host.remove_tab(tab.id)
            logger.debug("[remove_tabs] removed %s %s", tab.id, tab.url)
        return True

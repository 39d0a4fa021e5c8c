from __future__ import annotations

import logging
from collections.abc import Mapping

from .tracker import TabItem
from .urls import first_syncable, should_ignore_url

logger = logging.getLogger(__name__)


class RecentlyClosed:
    """URLs closed on this peer, kept so a lagging snapshot cannot recreate them."""

    def __init__(self) -> None:
        self._closed: dict[str, int] = {}

    def __contains__(self, url: object) -> bool:
        return url in self._closed

    def track(self, urls: list[str | None], *, now: int) -> str | None:
        url = first_syncable(urls)
        if url is not None:
            self._closed[url] = now
        return url

    def closed_at(self, url: str) -> int | None:
        return self._closed.get(url)

    def is_recent(self, url: str, *, now: int, window_ms: int) -> bool:
        closed_at = self._closed.get(url)
        return closed_at is not None and now - closed_at < window_ms

    def purge(self, *, now: int, window_ms: int) -> int:
        stale = [url for url, closed_at in self._closed.items() if now - closed_at > window_ms]
        for url in stale:
            del self._closed[url]
        return len(stale)


class RecycleBin:
    """Tab records stashed when the whole session goes away, keyed by URL."""

    def __init__(self) -> None:
        self._items: dict[str, list[TabItem]] = {}

    def __len__(self) -> int:
        return sum(len(items) for items in self._items.values())

    def stash(self, item: TabItem | None) -> bool:
        if item is None or item.url is None or should_ignore_url(item.url):
            return False
        item.clear_transient()
        self._items.setdefault(item.url, []).append(item)
        return True

    def stash_map(self, tab_map: Mapping[str, object]) -> int:
        stashed = 0
        for raw in tab_map.values():
            if self.stash(TabItem.from_dict(raw)):
                stashed += 1
        return stashed

    def reuse(self, url: str | None) -> TabItem | None:
        if not url:
            return None
        items = self._items.get(url)
        if not items:
            return None
        item = items.pop(0)
        if not items:
            del self._items[url]
        return item

    def purge(self, *, now: int, max_age_ms: int) -> int:
        removed = 0
        for url in list(self._items):
            kept = [
                item
                for item in self._items[url]
                if item.update_time is not None and now - item.update_time <= max_age_ms
            ]
            removed += len(self._items[url]) - len(kept)
            if kept:
                self._items[url] = kept
            else:
                del self._items[url]
        if removed:
            logger.debug("[recycle] purged %s stale records", removed)
        return removed

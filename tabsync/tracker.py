from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TabItem:
    url: str | None = None
    canonical_url: str | None = None
    redirect_target: str | None = None
    assumed_redirect: bool = False
    redirect_chain: dict[str, str] = field(default_factory=dict)
    provenance: str | None = None
    update_time: int | None = None
    sync_deleting: bool = False

    def clear_transient(self) -> None:
        self.redirect_target = None
        self.assumed_redirect = False
        self.redirect_chain = {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.url is not None:
            data["url"] = self.url
        if self.canonical_url is not None:
            data["originalUrl"] = self.canonical_url
        if self.provenance is not None:
            data["source"] = self.provenance
        if self.update_time is not None:
            data["updateTime"] = self.update_time
        return data

    @classmethod
    def from_dict(cls, data: object) -> TabItem | None:
        if not isinstance(data, dict):
            return None
        update_time = data.get("updateTime")
        return cls(
            url=_optional_str(data.get("url")),
            canonical_url=_optional_str(data.get("originalUrl")),
            provenance=_optional_str(data.get("source")),
            update_time=int(update_time) if isinstance(update_time, int | float) else None,
        )


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


class TabTracker:
    """Per-tab records keyed by the host's transient tab id."""

    def __init__(self) -> None:
        self._items: dict[int, TabItem] = {}

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def get(self, tab_id: int) -> TabItem:
        item = self._items.get(tab_id)
        if item is None:
            item = TabItem()
            self._items[tab_id] = item
        return item

    def peek(self, tab_id: int) -> TabItem | None:
        return self._items.get(tab_id)

    def adopt(self, tab_id: int, item: TabItem) -> None:
        self._items[tab_id] = item

    def pop(self, tab_id: int) -> TabItem | None:
        return self._items.pop(tab_id, None)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {str(tab_id): item.to_dict() for tab_id, item in self._items.items()}

    def purge(self, open_tab_ids: Iterable[int], *, now: int, max_age_ms: int) -> int:
        open_ids = set(open_tab_ids)
        removed = 0
        for tab_id in list(self._items):
            if tab_id in open_ids:
                continue
            item = self._items[tab_id]
            if item.update_time is None or now - item.update_time > max_age_ms:
                del self._items[tab_id]
                removed += 1
        return removed

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

TAB_LOADING = "loading"
TAB_COMPLETE = "complete"
TAB_UNLOADED = "unloaded"

NORMAL_WINDOW = "normal"


@dataclass(frozen=True)
class HostTab:
    id: int
    url: str | None
    status: str = TAB_COMPLETE
    pinned: bool = False
    pending_url: str | None = None


class TabHost(Protocol):
    async def query_tabs(self) -> list[HostTab] | None: ...

    async def create_tab(self, url: str, *, pinned: bool = False, active: bool = False) -> HostTab: ...

    async def remove_tab(self, tab_id: int) -> None: ...

    async def has_normal_window(self) -> bool: ...


def scoped_tabs(tabs: list[HostTab], *, sync_all: bool) -> list[HostTab]:
    if sync_all:
        return list(tabs)
    return [tab for tab in tabs if tab.pinned]

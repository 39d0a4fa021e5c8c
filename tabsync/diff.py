from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .host import HostTab
from .record import RecordEntry
from .tracker import TabTracker
from .urls import normalize_url, should_ignore_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TabDiff:
    additional: list[RecordEntry]
    missing: list[HostTab]
    current: list[HostTab]

    @property
    def empty(self) -> bool:
        return not self.additional and not self.missing


def diff_tabs(
    current_tabs: Sequence[HostTab] | None,
    remote_entries: Sequence[RecordEntry] | None,
    tracker: TabTracker,
) -> TabDiff:
    """Match local tabs against remote entries one-to-one.

    A remote entry matches a tab when its URL equals the tab's observed URL or
    its canonical URL. Unmatched remote entries are `additional`, unmatched
    non-ignorable tabs are `missing`.
    """

    additional = list(remote_entries or [])
    current = list(current_tabs or [])
    missing: list[HostTab] = []

    for tab in current:
        if should_ignore_url(tab.url):
            continue
        observed = normalize_url(tab.url)
        item = tracker.peek(tab.id)
        canonical = normalize_url(item.canonical_url) if item else ""
        match_index = None
        for index, entry in enumerate(additional):
            remote = normalize_url(entry.url)
            if remote == observed or (canonical and remote == canonical):
                match_index = index
                break
        if match_index is None:
            missing.append(tab)
        else:
            del additional[match_index]

    logger.debug("[diff] additional=%s missing=%s", len(additional), len(missing))
    return TabDiff(additional=additional, missing=missing, current=current)

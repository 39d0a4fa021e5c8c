from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .caches import RecentlyClosed
from .diff import TabDiff
from .host import HostTab
from .record import RecordEntry, SyncRecord
from .tracker import TabTracker
from .urls import should_ignore_url
from .utils import format_time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergePlan:
    creates: list[RecordEntry]
    removals: list[HostTab]
    sync_time: int


def advance_time(times: dict[str, int], peer_id: str, value: int) -> bool:
    """Move a per-peer timestamp forward; never roll it back."""

    if not peer_id:
        return False
    if value <= times.get(peer_id, 0):
        return False
    times[peer_id] = value
    return True


def sync_time(record: SyncRecord, *, local_peer_id: str, dest_sync_times: dict[str, int]) -> int:
    """Latest time the record's author is known to have seen this peer's state."""

    value = record.peer_sync_times.get(local_peer_id, 0)
    merged = dest_sync_times.get(record.author_peer_id, 0)
    if merged and value < merged:
        logger.debug(
            "[sync_time] %s moved %s -> %s",
            record.author_peer_id,
            format_time(value),
            format_time(merged),
        )
        value = merged
    return value


def plan_creates(
    additional: Sequence[RecordEntry],
    *,
    local_peer_id: str,
    recent: RecentlyClosed,
    now: int,
    recreate_delay_ms: int,
) -> list[RecordEntry]:
    creates: list[RecordEntry] = []
    for entry in additional:
        if should_ignore_url(entry.url):
            logger.debug("[plan_creates] skipping ignored url %s", entry.url)
        elif entry.provenance == local_peer_id:
            logger.debug("[plan_creates] skipping tab created on this peer %s", entry.url)
        elif recent.is_recent(entry.url, now=now, window_ms=recreate_delay_ms):
            logger.debug(
                "[plan_creates] skipping recently closed %s closed at %s",
                entry.url,
                format_time(recent.closed_at(entry.url)),
            )
        else:
            creates.append(entry)
    return creates


def plan_removals(
    missing: Sequence[HostTab],
    *,
    tracker: TabTracker,
    author_peer_id: str,
    sync_time: int,
    started_at: int,
    now: int,
    start_duration_ms: int,
) -> list[HostTab]:
    # Right after start the local store may not be warmed up yet; only act on
    # a lone candidate until the startup window has passed.
    if len(missing) != 1 and now - started_at < start_duration_ms:
        if missing:
            logger.debug("[plan_removals] startup window, holding %s removals", len(missing))
        return []

    removals: list[HostTab] = []
    for tab in missing:
        item = tracker.peek(tab.id)
        provenance = item.provenance if item else None
        update_time = started_at
        if item is not None and item.update_time is not None:
            update_time = item.update_time
        if provenance == author_peer_id or (sync_time and sync_time >= update_time):
            removals.append(tab)
        else:
            logger.debug(
                "[plan_removals] keeping tab %s %s from %s updated at %s",
                tab.id,
                tab.url,
                author_peer_id,
                format_time(update_time),
            )
    return removals


def plan_merge(
    diff: TabDiff,
    record: SyncRecord,
    *,
    tracker: TabTracker,
    recent: RecentlyClosed,
    local_peer_id: str,
    dest_sync_times: dict[str, int],
    started_at: int,
    now: int,
    recreate_delay_ms: int,
    start_duration_ms: int,
) -> MergePlan:
    value = sync_time(record, local_peer_id=local_peer_id, dest_sync_times=dest_sync_times)
    creates = plan_creates(
        diff.additional,
        local_peer_id=local_peer_id,
        recent=recent,
        now=now,
        recreate_delay_ms=recreate_delay_ms,
    )
    removals = plan_removals(
        diff.missing,
        tracker=tracker,
        author_peer_id=record.author_peer_id,
        sync_time=value,
        started_at=started_at,
        now=now,
        start_duration_ms=start_duration_ms,
    )
    return MergePlan(creates=creates, removals=removals, sync_time=value)


def build_entries(
    tabs: Sequence[HostTab],
    tracker: TabTracker,
    *,
    local_peer_id: str,
) -> list[RecordEntry]:
    entries: list[RecordEntry] = []
    for tab in tabs:
        if should_ignore_url(tab.url):
            continue
        item = tracker.peek(tab.id)
        url = (item.canonical_url if item else None) or tab.url
        if url is None:
            continue
        provenance = (item.provenance if item else None) or local_peer_id
        entries.append(RecordEntry(url=url, provenance=provenance, pinned=tab.pinned))
    return entries


def build_record(
    tabs: Sequence[HostTab],
    tracker: TabTracker,
    *,
    local_peer_id: str,
    write_time: int,
    source_sync_times: dict[str, int],
) -> SyncRecord:
    return SyncRecord(
        entries=build_entries(tabs, tracker, local_peer_id=local_peer_id),
        author_peer_id=local_peer_id,
        write_time=write_time,
        peer_sync_times=dict(source_sync_times),
    )

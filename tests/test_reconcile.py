from tabsync.caches import RecentlyClosed
from tabsync.diff import diff_tabs
from tabsync.host import HostTab
from tabsync.reconcile import (
    advance_time,
    build_entries,
    build_record,
    plan_creates,
    plan_merge,
    plan_removals,
    sync_time,
)
from tabsync.record import RecordEntry, SyncRecord
from tabsync.tracker import TabTracker
from tabsync.urls import PLACEHOLDER_URL

A = "https://a.example/"
B = "https://b.example/"
C = "https://c.example/"


def test_advance_time_is_monotonic() -> None:
    times: dict[str, int] = {}
    assert advance_time(times, "peer-b", 10)
    assert not advance_time(times, "peer-b", 5)
    assert not advance_time(times, "", 50)
    assert times == {"peer-b": 10}


def test_sync_time_prefers_later_local_observation() -> None:
    record = SyncRecord(author_peer_id="peer-b", peer_sync_times={"peer-a": 100})
    assert sync_time(record, local_peer_id="peer-a", dest_sync_times={}) == 100
    assert sync_time(record, local_peer_id="peer-a", dest_sync_times={"peer-b": 300}) == 300
    assert sync_time(record, local_peer_id="peer-a", dest_sync_times={"peer-b": 50}) == 100


def test_plan_creates_skips_own_ignored_and_recent() -> None:
    recent = RecentlyClosed()
    recent.track([C], now=1_000)
    entries = [
        RecordEntry(A, provenance="peer-b"),
        RecordEntry(B, provenance="peer-a"),
        RecordEntry(C, provenance="peer-b"),
        RecordEntry(PLACEHOLDER_URL, provenance="peer-b"),
    ]
    creates = plan_creates(
        entries, local_peer_id="peer-a", recent=recent, now=2_000, recreate_delay_ms=5_000
    )
    assert [entry.url for entry in creates] == [A]

    creates = plan_creates(
        entries, local_peer_id="peer-a", recent=recent, now=7_000, recreate_delay_ms=5_000
    )
    assert [entry.url for entry in creates] == [A, C]


def test_plan_removals_needs_author_provenance_or_newer_sync_time() -> None:
    tracker = TabTracker()
    tracker.get(1).provenance = "peer-b"
    tracker.get(2).update_time = 500
    tracker.get(3).update_time = 5_000
    missing = [HostTab(id=1, url=A), HostTab(id=2, url=B), HostTab(id=3, url=C)]

    removals = plan_removals(
        missing,
        tracker=tracker,
        author_peer_id="peer-b",
        sync_time=1_000,
        started_at=0,
        now=100_000,
        start_duration_ms=6_000,
    )

    assert [tab.id for tab in removals] == [1, 2]


def test_plan_removals_without_sync_time_keeps_unknown_tabs() -> None:
    removals = plan_removals(
        [HostTab(id=1, url=A)],
        tracker=TabTracker(),
        author_peer_id="peer-b",
        sync_time=0,
        started_at=0,
        now=100_000,
        start_duration_ms=6_000,
    )
    assert removals == []


def test_startup_window_only_allows_a_single_removal() -> None:
    tracker = TabTracker()
    for tab_id in (1, 2):
        tracker.get(tab_id).provenance = "peer-b"
    kwargs = dict(
        tracker=tracker,
        author_peer_id="peer-b",
        sync_time=0,
        started_at=10_000,
        now=12_000,
        start_duration_ms=6_000,
    )
    two = [HostTab(id=1, url=A), HostTab(id=2, url=B)]

    assert plan_removals(two, **kwargs) == []
    assert [tab.id for tab in plan_removals(two[:1], **kwargs)] == [1]
    kwargs["now"] = 16_000
    assert [tab.id for tab in plan_removals(two, **kwargs)] == [1, 2]


def test_plan_merge_combines_creates_and_removals() -> None:
    tracker = TabTracker()
    tabs = [HostTab(id=1, url=A), HostTab(id=2, url=B)]
    record = SyncRecord(
        entries=[RecordEntry(B, provenance="peer-b"), RecordEntry(C, provenance="peer-b")],
        author_peer_id="peer-b",
        write_time=2_000,
        peer_sync_times={"peer-a": 1_500},
    )
    plan = plan_merge(
        diff_tabs(tabs, record.entries, tracker),
        record,
        tracker=tracker,
        recent=RecentlyClosed(),
        local_peer_id="peer-a",
        dest_sync_times={},
        started_at=1_000,
        now=50_000,
        recreate_delay_ms=300_000,
        start_duration_ms=6_000,
    )
    assert [entry.url for entry in plan.creates] == [C]
    assert [tab.id for tab in plan.removals] == [1]
    assert plan.sync_time == 1_500


def test_build_record_uses_canonical_urls_and_provenance() -> None:
    tracker = TabTracker()
    item = tracker.get(2)
    item.canonical_url = B
    item.provenance = "peer-b"
    tabs = [
        HostTab(id=1, url=A, pinned=True),
        HostTab(id=2, url=B + "?redirected"),
        HostTab(id=3, url=PLACEHOLDER_URL),
    ]

    entries = build_entries(tabs, tracker, local_peer_id="peer-a")
    assert entries == [
        RecordEntry(A, provenance="peer-a", pinned=True),
        RecordEntry(B, provenance="peer-b", pinned=False),
    ]

    record = build_record(
        tabs, tracker, local_peer_id="peer-a", write_time=9, source_sync_times={"peer-b": 4}
    )
    assert record.author_peer_id == "peer-a"
    assert record.write_time == 9
    assert record.peer_sync_times == {"peer-b": 4}


def test_build_entries_skips_tabs_without_url() -> None:
    tracker = TabTracker()
    tracker.get(2).provenance = "peer-b"
    tabs = [HostTab(id=1, url=A), HostTab(id=2, url=None, status="loading")]

    assert build_entries(tabs, tracker, local_peer_id="peer-a") == [
        RecordEntry(A, provenance="peer-a", pinned=False)
    ]

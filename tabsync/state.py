from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class SyncStatus(str, Enum):
    CONVERGED = "converged"
    DISABLED = "disabled"
    MERGING = "merging"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class EngineState:
    auto_sync_enabled: bool = False
    sync_all: bool = True
    normal_window_present: bool = False
    tabs_settled: bool = True
    sync_allowed: bool = False
    merge_pending: bool = False
    busy: bool = False


def with_auto_sync(state: EngineState, enabled: bool) -> EngineState:
    # Turning auto-sync on merges the stored record at the next chance.
    return replace(
        state,
        auto_sync_enabled=enabled,
        merge_pending=state.merge_pending or enabled,
    )


def with_window(state: EngineState, present: bool) -> EngineState:
    return replace(state, normal_window_present=present)


def with_settled(state: EngineState, settled: bool) -> EngineState:
    return replace(state, tabs_settled=settled)


def with_busy(state: EngineState, busy: bool) -> EngineState:
    return replace(state, busy=busy)


def evaluate(state: EngineState) -> tuple[EngineState, bool]:
    """Recompute `sync_allowed`; the flag says whether a pending merge should start now."""

    if not state.normal_window_present:
        return replace(state, sync_allowed=False), False
    if not state.tabs_settled:
        return state, False
    if state.merge_pending:
        return replace(state, sync_allowed=True, merge_pending=False), True
    return replace(state, sync_allowed=True), False


def status_of(state: EngineState) -> SyncStatus:
    if state.busy:
        return SyncStatus.MERGING
    if not state.auto_sync_enabled:
        return SyncStatus.DISABLED
    if state.sync_allowed:
        return SyncStatus.CONVERGED
    return SyncStatus.BLOCKED

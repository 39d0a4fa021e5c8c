from __future__ import annotations

import json
import logging
from typing import Any

import typer
from rich import print

from . import __version__
from .config import (
    TabSyncConfig,
    get_config_path,
    load_config,
    read_config_file,
    set_config_values,
)
from .engine import SYNC_RECORD_KEY, SYNC_REQUEST_KEY, sync_request
from .record import RecordDecodeError, SyncRecord, decompress_record, describe_record
from .storage import SqliteKeyValueStore
from .utils import format_time, now_ms

app = typer.Typer(help="tabsync: keep open tabs in step across peers")

SCOPES = {"all": True, "pinned": False}


def read_config_or_exit() -> TabSyncConfig:
    try:
        read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    return load_config()


def _open_store(path: str) -> SqliteKeyValueStore:
    try:
        return SqliteKeyValueStore(path)
    except OSError as exc:
        print(f"[red]Failed to open store {path}: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def _print_times(label: str, times: Any) -> None:
    if not isinstance(times, dict) or not times:
        print(f"- {label}: none")
        return
    print(f"- {label}:")
    for peer_id, value in sorted(times.items()):
        print(f"  - {peer_id}: {format_time(value)}")


def _decode_record(raw_record: Any) -> SyncRecord:
    if not isinstance(raw_record, str):
        raise RecordDecodeError(f"expected encoded text, got {type(raw_record).__name__}")
    return decompress_record(raw_record)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
) -> None:
    """Inspect and change tabsync settings."""

    level = "DEBUG" if verbose else load_config().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def status() -> None:
    """Show peer identity, settings and the stored record."""

    config = read_config_or_exit()
    local = _open_store(config.local_db_path)
    shared = _open_store(config.shared_db_path)
    try:
        peer_id = local.get_now("peerId")
        enabled = bool(local.get_now("autoSyncEnabled"))
        sync_all = shared.get_now("syncAll")
        raw_record = shared.get_now(SYNC_RECORD_KEY)
        source_times = local.get_now("sourceSyncTimes")
        dest_times = local.get_now("destSyncTimes")
    finally:
        local.close()
        shared.close()

    print(f"- Peer ID: {peer_id or '(not initialized)'}")
    print(f"- Auto-sync: {'[green]enabled[/green]' if enabled else '[yellow]disabled[/yellow]'}")
    print(f"- Scope: {'pinned' if sync_all is False else 'all'}")
    print(f"- Config: {get_config_path()}")
    if not raw_record:
        print("- Record: none")
    else:
        try:
            record = _decode_record(raw_record)
        except RecordDecodeError as exc:
            print(f"- Record: [red]unreadable ({exc})[/red]")
        else:
            mine = " (me)" if record.author_peer_id == peer_id else ""
            print(
                f"- Record: {len(record.entries)} tabs by {record.author_peer_id}{mine}"
                f" at {format_time(record.write_time)}"
            )
    _print_times("Merged from", source_times)
    _print_times("Published over", dest_times)


def _set_auto_sync(enabled: bool) -> None:
    config = read_config_or_exit()
    store = _open_store(config.local_db_path)
    try:
        store.set_now({"autoSyncEnabled": enabled})
    finally:
        store.close()


@app.command()
def enable() -> None:
    """Turn auto-sync on for this peer."""

    _set_auto_sync(True)
    print("[green]Auto-sync enabled[/green]")


@app.command()
def disable() -> None:
    """Turn auto-sync off for this peer."""

    _set_auto_sync(False)
    print("[yellow]Auto-sync disabled[/yellow]")


@app.command()
def scope(
    value: str = typer.Argument(..., help="all or pinned"),
) -> None:
    """Choose which tabs every peer syncs."""

    if value not in SCOPES:
        print(f"[red]Unknown scope {value!r}; use 'all' or 'pinned'[/red]")
        raise typer.Exit(code=1)
    config = read_config_or_exit()
    store = _open_store(config.shared_db_path)
    try:
        store.set_now({"syncAll": SCOPES[value]})
    finally:
        store.close()
    print(f"[green]Scope set to {value}[/green]")


def _request(action: str) -> None:
    config = read_config_or_exit()
    store = _open_store(config.local_db_path)
    try:
        store.set_now({SYNC_REQUEST_KEY: sync_request(action, time=now_ms())})
    finally:
        store.close()


@app.command()
def save() -> None:
    """Ask the running runtime to publish this peer's tabs now."""

    _request("saveTabs")
    print("[green]Save requested[/green]")


@app.command()
def restore() -> None:
    """Ask the running runtime to merge the shared record now."""

    _request("restoreTabs")
    print("[green]Restore requested[/green]")


@app.command()
def snapshot(
    as_json: bool = typer.Option(False, "--json", help="Print the decoded record as JSON"),
) -> None:
    """Print the shared record."""

    config = read_config_or_exit()
    local = _open_store(config.local_db_path)
    shared = _open_store(config.shared_db_path)
    try:
        peer_id = local.get_now("peerId")
        raw_record = shared.get_now(SYNC_RECORD_KEY)
    finally:
        local.close()
        shared.close()
    if not raw_record:
        print("[yellow]No record stored yet[/yellow]")
        return
    try:
        record = _decode_record(raw_record)
    except RecordDecodeError as exc:
        print(f"[red]Stored record is unreadable: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    if as_json:
        typer.echo(json.dumps(record.to_wire(), ensure_ascii=False, indent=2))
        return
    typer.echo(describe_record(record, local_peer_id=peer_id))


@app.command("config")
def show_config(
    assignments: list[str] | None = typer.Option(
        None, "--set", help="Store KEY=VALUE in the config file (repeatable)"
    ),
) -> None:
    """Print the effective configuration, or change it with --set."""

    config = read_config_or_exit()
    if assignments:
        updates: dict[str, str] = {}
        for assignment in assignments:
            key, sep, value = assignment.partition("=")
            if not sep or not key.strip():
                print(f"[red]Expected KEY=VALUE, got {assignment!r}[/red]")
                raise typer.Exit(code=1)
            updates[key.strip()] = value.strip()
        try:
            path = set_config_values(updates)
        except ValueError as exc:
            print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        print(f"[green]Updated {path}[/green]")
        return
    typer.echo(json.dumps(config.as_dict(), indent=2))


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)

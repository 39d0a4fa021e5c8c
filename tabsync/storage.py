from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import sqlite3
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

LOCAL_AREA = "local"
SHARED_AREA = "sync"


@dataclass(frozen=True)
class StorageChange:
    old_value: Any = None
    new_value: Any = None


ChangeListener = Callable[[dict[str, StorageChange], str], Awaitable[None]]


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, values: dict[str, Any]) -> None: ...


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            rev INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    conn.commit()


class SqliteKeyValueStore:
    """JSON values in a SQLite file; several processes may share one file."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path).expanduser()
        self.conn = connect(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        initialize_schema(self.conn)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def get_now(self, key: str) -> Any:
        with self._lock:
            row = self.conn.execute("SELECT value_json FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return _loads(row["value_json"], key=key)

    def set_now(self, values: dict[str, Any]) -> None:
        now = dt.datetime.now(dt.UTC).isoformat()
        with self._lock:
            # Take the write lock before reading MAX(rev) so two processes never hand out
            # the same rev.
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                row = self.conn.execute("SELECT COALESCE(MAX(rev), 0) AS rev FROM kv").fetchone()
                rev = int(row["rev"] or 0)
                for key, value in values.items():
                    rev += 1
                    self.conn.execute(
                        """
                        INSERT INTO kv(key, value_json, rev, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            value_json = excluded.value_json,
                            rev = excluded.rev,
                            updated_at = excluded.updated_at
                        """,
                        (key, json.dumps(value, ensure_ascii=False), rev, now),
                    )
            except Exception:
                self.conn.rollback()
                raise
            self.conn.commit()

    def items_now(self) -> dict[str, tuple[int, Any]]:
        with self._lock:
            rows = self.conn.execute("SELECT key, value_json, rev FROM kv").fetchall()
        return {
            str(row["key"]): (int(row["rev"]), _loads(row["value_json"], key=str(row["key"])))
            for row in rows
        }

    async def get(self, key: str) -> Any:
        return await asyncio.to_thread(self.get_now, key)

    async def set(self, values: dict[str, Any]) -> None:
        await asyncio.to_thread(self.set_now, values)


def _loads(raw: str, *, key: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("stored value for %s is not valid json", key)
        return None


class StoreWatcher:
    """Polls a SQLite store and reports changed keys to a listener."""

    def __init__(
        self,
        store: SqliteKeyValueStore,
        listener: ChangeListener,
        *,
        area: str,
        interval_ms: int,
    ) -> None:
        self.store = store
        self.listener = listener
        self.area = area
        self.interval_ms = interval_ms
        self._seen: dict[str, tuple[int, Any]] | None = None
        self._task: asyncio.Task[None] | None = None

    async def poll(self) -> dict[str, StorageChange]:
        current = await asyncio.to_thread(self.store.items_now)
        previous = self._seen
        self._seen = current
        if previous is None:
            return {}
        changes: dict[str, StorageChange] = {}
        for key, (rev, value) in current.items():
            old = previous.get(key)
            if old is None or old[0] != rev:
                changes[key] = StorageChange(old[1] if old else None, value)
        for key, (_rev, value) in previous.items():
            if key not in current:
                changes[key] = StorageChange(value, None)
        if changes:
            logger.debug("[watch] %s changed in %s: %s", len(changes), self.area, sorted(changes))
            await self.listener(changes, self.area)
        return changes

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        interval = max(0.05, self.interval_ms / 1000.0)
        await self.poll()
        while True:
            await asyncio.sleep(interval)
            try:
                await self.poll()
            except Exception:
                logger.exception("store watcher poll failed for %s", self.area)

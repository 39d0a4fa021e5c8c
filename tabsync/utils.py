from __future__ import annotations

import datetime as dt
import time


def now_ms() -> int:
    return int(time.time() * 1000)


def format_time(value: int | None) -> str:
    if not value:
        return "never"
    stamp = dt.datetime.fromtimestamp(value / 1000, dt.UTC).isoformat(timespec="seconds")
    return f"{value} ({stamp})"

from __future__ import annotations

import json
import os
import warnings
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/tabsync/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "start_duration_ms": "TABSYNC_START_DURATION_MS",
    "write_delay_ms": "TABSYNC_WRITE_DELAY_MS",
    "redirect_delay_ms": "TABSYNC_REDIRECT_DELAY_MS",
    "step_delay_ms": "TABSYNC_STEP_DELAY_MS",
    "recreate_delay_ms": "TABSYNC_RECREATE_DELAY_MS",
    "clean_recent_interval_ms": "TABSYNC_CLEAN_RECENT_INTERVAL_MS",
    "clean_recycle_interval_ms": "TABSYNC_CLEAN_RECYCLE_INTERVAL_MS",
    "recycle_duration_ms": "TABSYNC_RECYCLE_DURATION_MS",
    "watch_interval_ms": "TABSYNC_WATCH_INTERVAL_MS",
    "local_db_path": "TABSYNC_LOCAL_DB",
    "shared_db_path": "TABSYNC_SHARED_DB",
    "log_level": "TABSYNC_LOG_LEVEL",
}

INT_FIELDS = {
    "start_duration_ms",
    "write_delay_ms",
    "redirect_delay_ms",
    "step_delay_ms",
    "recreate_delay_ms",
    "clean_recent_interval_ms",
    "clean_recycle_interval_ms",
    "recycle_duration_ms",
    "watch_interval_ms",
}

CONFIG_ENV_VAR = "TABSYNC_CONFIG"


def get_config_path(path: Path | None = None) -> Path:
    if path is not None:
        return path.expanduser()
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH).expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    """Raw settings stored in the config file; a missing or blank file is empty."""

    try:
        raw = get_config_path(path).read_text()
    except FileNotFoundError:
        return {}
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    staged = config_path.with_name(f"{config_path.name}.tmp")
    staged.write_text(json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True) + "\n")
    staged.replace(config_path)
    return config_path


def get_env_overrides() -> dict[str, str]:
    return {
        key: os.environ[env_var]
        for key, env_var in CONFIG_ENV_OVERRIDES.items()
        if env_var in os.environ
    }


@dataclass
class TabSyncConfig:
    # Sync conservatively right after start.
    start_duration_ms: int = 6000
    # Fixed latency between the first write request of a burst and the write.
    write_delay_ms: int = 1500
    # A tab loading again within this window after completing is a redirect.
    redirect_delay_ms: int = 1500
    step_delay_ms: int = 1000
    # Don't recreate a URL closed on this peer within this window.
    recreate_delay_ms: int = 300_000
    clean_recent_interval_ms: int = 3_000_000
    clean_recycle_interval_ms: int = 3_600_000
    recycle_duration_ms: int = 10_800_000
    watch_interval_ms: int = 2000
    local_db_path: str = "~/.tabsync/local.sqlite"
    shared_db_path: str = "~/.tabsync/shared.sqlite"
    log_level: str = "WARNING"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


CONFIG_FIELDS = frozenset(field.name for field in fields(TabSyncConfig))


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    if parsed < 0:
        warnings.warn(f"Negative value for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    return parsed


def parse_config_value(key: str, raw: str) -> int | str:
    if key not in CONFIG_FIELDS:
        raise ValueError(f"unknown config key {key!r}")
    if key not in INT_FIELDS:
        return raw
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{key} must not be negative")
    return value


def set_config_values(updates: dict[str, str], path: Path | None = None) -> Path:
    """Validate `updates` and merge them into the config file."""

    parsed = {key: parse_config_value(key, raw) for key, raw in updates.items()}
    data = read_config_file(path)
    data.update(parsed)
    return write_config_file(data, path)


def load_config(path: Path | None = None) -> TabSyncConfig:
    try:
        data = read_config_file(path)
    except ValueError:
        data = {}
    cfg = _apply_dict(TabSyncConfig(), data)
    return _apply_dict(cfg, get_env_overrides())


def _apply_dict(cfg: TabSyncConfig, data: dict[str, Any]) -> TabSyncConfig:
    for key, value in data.items():
        if key not in CONFIG_FIELDS:
            continue
        if key in INT_FIELDS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if value is None:
            continue
        setattr(cfg, key, str(value))
    return cfg

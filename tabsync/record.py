from __future__ import annotations

import base64
import binascii
import json
import logging
import zlib
from dataclasses import dataclass, field
from typing import Any

from .utils import format_time

logger = logging.getLogger(__name__)

# chrome.storage.sync QUOTA_BYTES_PER_ITEM
SYNC_ITEM_QUOTA_BYTES = 8192


class RecordDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class RecordEntry:
    url: str
    provenance: str | None = None
    pinned: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {"identifier": self.url, "provenance": self.provenance, "pinned": self.pinned}


@dataclass
class SyncRecord:
    entries: list[RecordEntry] = field(default_factory=list)
    author_peer_id: str = ""
    write_time: int = 0
    peer_sync_times: dict[str, int] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "items": [entry.to_wire() for entry in self.entries],
            "authorPeerId": self.author_peer_id,
            "writeTime": self.write_time,
            "peerSyncTimes": dict(self.peer_sync_times),
        }

    @classmethod
    def from_wire(cls, data: object) -> SyncRecord:
        if not isinstance(data, dict):
            raise RecordDecodeError("record must be an object")
        items = data.get("items")
        if not isinstance(items, list):
            raise RecordDecodeError("record items must be a list")
        entries: list[RecordEntry] = []
        for raw in items:
            if not isinstance(raw, dict):
                raise RecordDecodeError("record item must be an object")
            url = raw.get("identifier")
            if not isinstance(url, str):
                raise RecordDecodeError("record item identifier must be a string")
            provenance = raw.get("provenance")
            entries.append(
                RecordEntry(
                    url=url,
                    provenance=provenance if isinstance(provenance, str) else None,
                    pinned=bool(raw.get("pinned")),
                )
            )
        times = data.get("peerSyncTimes") or {}
        if not isinstance(times, dict):
            raise RecordDecodeError("peerSyncTimes must be an object")
        write_time = data.get("writeTime") or 0
        if not isinstance(write_time, int | float):
            raise RecordDecodeError("writeTime must be a number")
        return cls(
            entries=entries,
            author_peer_id=str(data.get("authorPeerId") or ""),
            write_time=int(write_time),
            peer_sync_times={
                str(peer): int(value)
                for peer, value in times.items()
                if isinstance(value, int | float)
            },
        )


def compress_record(record: SyncRecord) -> str:
    raw = json.dumps(record.to_wire(), ensure_ascii=False, separators=(",", ":"))
    encoded = base64.b64encode(zlib.compress(raw.encode("utf-8"), 9)).decode("ascii")
    if len(encoded) > SYNC_ITEM_QUOTA_BYTES:
        logger.warning(
            "sync record is %s bytes, over the %s byte item quota (%s tabs)",
            len(encoded),
            SYNC_ITEM_QUOTA_BYTES,
            len(record.entries),
        )
    return encoded


def decompress_record(value: str) -> SyncRecord:
    try:
        raw = zlib.decompress(base64.b64decode(value.encode("ascii"), validate=True))
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, zlib.error, UnicodeError, json.JSONDecodeError) as exc:
        raise RecordDecodeError("undecodable sync record") from exc
    return SyncRecord.from_wire(data)


def load_record(value: object) -> SyncRecord | None:
    """Decode a stored record; anything absent, empty or broken reads as None."""

    if not value or not isinstance(value, str):
        return None
    try:
        record = decompress_record(value)
    except RecordDecodeError as exc:
        logger.warning("ignoring stored sync record: %s", exc)
        return None
    if not record.entries:
        return None
    return record


def describe_record(record: SyncRecord, *, local_peer_id: str | None = None) -> str:
    def _peer(peer_id: str | None) -> str:
        if peer_id and peer_id == local_peer_id:
            return f"{peer_id} (me)"
        return peer_id or "-"

    lines = [
        f"author: {_peer(record.author_peer_id)}",
        f"time: {format_time(record.write_time)}",
        "peer sync times:",
    ]
    for peer_id, value in record.peer_sync_times.items():
        lines.append(f"    {_peer(peer_id)}: {format_time(value)}")
    lines.append(f"tabs ({len(record.entries)}):")
    for entry in record.entries:
        pinned = " pinned" if entry.pinned else ""
        lines.append(f"    [{_peer(entry.provenance)}]{pinned} {entry.url}")
    return "\n".join(lines)

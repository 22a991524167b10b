"""Event bus publisher interface + local append-only file bus.

Each topic is a directory holding ``partition=0.jsonl`` and a ``head.json``
with the next offset. Instruction batches arrive on one topic and cleanup
sets leave on another.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import threading
from typing import Any, Protocol


@dataclass(frozen=True)
class EbRef:
    topic: str
    partition: int
    offset: str
    offset_kind: str
    published_at_utc: str | None = None


class EventBusPublisher(Protocol):
    def publish(self, topic: str, partition_key: str, payload: dict[str, Any]) -> EbRef:
        ...


class FileEventBusPublisher:
    """Local append-only bus with stable per-topic line offsets."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def publish(self, topic: str, partition_key: str, payload: dict[str, Any]) -> EbRef:
        topic_dir = self.root / _topic_token(topic)
        log_path = topic_dir / "partition=0.jsonl"
        head_path = topic_dir / "head.json"
        record = {
            "partition_key": partition_key,
            "payload": payload,
            "published_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        }
        line = json.dumps(record, ensure_ascii=True, separators=(",", ":")) + "\n"
        with self._lock:
            topic_dir.mkdir(parents=True, exist_ok=True)
            offset = _next_offset(log_path)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
            _write_head(head_path, offset + 1)
        return EbRef(
            topic=topic,
            partition=0,
            offset=str(offset),
            offset_kind="file_line",
            published_at_utc=record["published_at_utc"],
        )


def _topic_token(topic: str) -> str:
    text = str(topic or "").strip()
    if not text or "/" in text or text in {".", ".."}:
        raise ValueError(f"invalid topic: {topic!r}")
    return text


def _next_offset(log_path: Path) -> int:
    # The log is the source of truth; head.json is a convenience for tailers.
    if not log_path.exists():
        return 0
    with log_path.open("r", encoding="utf-8") as handle:
        return sum(1 for _ in handle)


def read_head(head_path: Path) -> int | None:
    if not head_path.exists():
        return None
    try:
        payload = json.loads(head_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    value = payload.get("next_offset") if isinstance(payload, dict) else None
    if isinstance(value, int) and value >= 0:
        return value
    return None


def _write_head(head_path: Path, next_offset: int) -> None:
    tmp_path = head_path.with_suffix(".json.tmp")
    tmp_path.write_text(
        json.dumps({"next_offset": next_offset}, ensure_ascii=True, separators=(",", ":")),
        encoding="utf-8",
    )
    tmp_path.replace(head_path)

"""Local file-bus reader."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator


@dataclass(frozen=True)
class EbRecord:
    topic: str
    partition: int
    offset: int
    record: dict[str, Any]
    error: str | None = None

    @property
    def payload(self) -> Any:
        return self.record.get("payload")


class EventBusReader:
    """Replay helper for the local file-bus, reading from a line offset."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def read(
        self,
        topic: str,
        *,
        partition: int = 0,
        from_offset: int = 0,
        max_records: int = 20,
    ) -> list[EbRecord]:
        if max_records <= 0:
            return []
        return list(self.iter_read(topic, partition=partition, from_offset=from_offset, max_records=max_records))

    def iter_read(
        self,
        topic: str,
        *,
        partition: int = 0,
        from_offset: int = 0,
        max_records: int = 20,
    ) -> Iterator[EbRecord]:
        log_path = self._log_path(topic, partition)
        if max_records <= 0 or not log_path.exists():
            return
        emitted = 0
        with log_path.open("r", encoding="utf-8") as handle:
            for line_index, line in enumerate(handle):
                if line_index < from_offset:
                    continue
                # A line without its newline is still being appended.
                if not line.endswith("\n"):
                    break
                if not line.strip():
                    continue
                yield _decode(topic, partition, line_index, line)
                emitted += 1
                if emitted >= max_records:
                    break

    def partitions(self, topic: str) -> list[int]:
        topic_dir = self.root / topic
        if not topic_dir.exists():
            return [0]
        parts: list[int] = []
        for path in topic_dir.glob("partition=*.jsonl"):
            try:
                parts.append(int(path.stem.replace("partition=", "")))
            except ValueError:
                continue
        return sorted(set(parts)) if parts else [0]

    def _log_path(self, topic: str, partition: int) -> Path:
        return self.root / topic / f"partition={partition}.jsonl"


def _decode(topic: str, partition: int, offset: int, line: str) -> EbRecord:
    # A corrupt line is surfaced with its offset so consumers can skip past it.
    try:
        record = json.loads(line)
    except ValueError as exc:
        return EbRecord(topic=topic, partition=partition, offset=offset, record={}, error=f"invalid JSON: {exc}")
    if not isinstance(record, dict):
        return EbRecord(topic=topic, partition=partition, offset=offset, record={}, error="record is not an object")
    return EbRecord(topic=topic, partition=partition, offset=offset, record=record)

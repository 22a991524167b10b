"""Instruction writer metrics + health helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Mapping, Protocol


INSTRUCTIONS_WRITTEN_METRIC = "gc_mako_instrs_written"


class MetricsCollector(Protocol):
    def observe(self, value: int, labels: Mapping[str, str]) -> None:
        ...


@dataclass
class InstructionWriterMetrics:
    instance: str
    counters: dict[str, int] = field(default_factory=dict)
    written_by_node: dict[str, dict[str, int]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.instance = _required(self.instance, "instance")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def bump(self, key: str, delta: int = 1) -> None:
        if key not in self.counters:
            raise ValueError(f"unsupported metric counter: {key}")
        self.counters[key] = int(self.counters.get(key, 0)) + int(delta)

    def observe(self, value: int, labels: Mapping[str, str]) -> None:
        """Record one instruction file of ``value`` records for a storage node."""
        node = _required(labels.get("manta_storage_id"), "manta_storage_id")
        bucket = self.written_by_node.setdefault(node, {"count": 0, "sum": 0})
        bucket["count"] += 1
        bucket["sum"] += int(value)

    def snapshot(self) -> dict[str, Any]:
        return {
            "generated_at_utc": _utc_now(),
            "instance": self.instance,
            "metrics": dict(self.counters),
            INSTRUCTIONS_WRITTEN_METRIC: {node: dict(values) for node, values in sorted(self.written_by_node.items())},
        }

    def export(self, path: Path) -> dict[str, Any]:
        payload = self.snapshot()
        _write_json(path, payload)
        return payload


def build_health_payload(*, instance: str, state: str, counters: Mapping[str, Any]) -> dict[str, Any]:
    write_error = int(counters.get("write_error_total", 0))
    notify_error = int(counters.get("notify_error_total", 0))
    validation = int(counters.get("validation_warning_total", 0))
    health_state = "GREEN"
    reasons: list[str] = []
    if validation > 0:
        health_state = "AMBER"
        reasons.append("INSTRUCTION_FIELDS_MISSING_NONZERO")
    if write_error > 0:
        health_state = "RED"
        reasons.append("SPOOL_WRITE_ERROR_NONZERO")
    if notify_error > 0:
        health_state = "RED"
        reasons.append("CLEANUP_NOTIFY_ERROR_NONZERO")
    return {
        "generated_at_utc": _utc_now(),
        "instance": _required(instance, "instance"),
        "component_state": str(state),
        "health_state": health_state,
        "health_reasons": sorted(set(reasons)),
        "metrics": dict(counters),
    }


def export_health(*, path: Path, payload: Mapping[str, Any]) -> dict[str, Any]:
    body = dict(payload)
    _write_json(path, body)
    return body


def _write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, sort_keys=True, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
    tmp_path.replace(path)


def _required(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValueError(f"{field_name} is required")
    return text


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


_REQUIRED_COUNTERS: tuple[str, ...] = (
    "batches_total",
    "batches_written_total",
    "records_written_total",
    "cleanup_total",
    "write_error_total",
    "validation_warning_total",
    "notify_error_total",
    "contract_error_total",
    "purged_total",
)

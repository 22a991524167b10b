"""Instruction writer profile loader."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
import socket
from typing import Any, Mapping

import yaml

from .contracts import InstructionWriterError
from .notifier import DEFAULT_CLEANUP_TOPIC


DEFAULT_INSTRUCTION_TOPIC = "manta_gc.instructions.v1"
DEFAULT_PURGE_TOPIC = "manta_gc.purged.v1"
_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class InstructionWriterConfigError(InstructionWriterError, ValueError):
    """Raised when an instruction writer profile is invalid."""


@dataclass(frozen=True)
class InstructionWriterConfig:
    profile_path: Path | None
    spool_root: Path
    instance: str
    ledger_locator: str
    event_bus_root: Path
    instruction_topic: str
    cleanup_topic: str
    purge_topic: str
    poll_max_records: int
    poll_sleep_seconds: float
    metrics_path: Path | None
    log_level: str


def load_worker_config(profile_path: Path) -> InstructionWriterConfig:
    try:
        payload = yaml.safe_load(profile_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise InstructionWriterConfigError(f"unable to read profile {profile_path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise InstructionWriterConfigError("instruction writer profile must be a mapping")
    section = payload.get("instruction_writer")
    if not isinstance(section, Mapping):
        raise InstructionWriterConfigError("instruction_writer must be a mapping")
    wiring = section.get("wiring") if isinstance(section.get("wiring"), Mapping) else {}
    return config_from_mapping(wiring, profile_path=profile_path)


def config_from_mapping(wiring: Mapping[str, Any], *, profile_path: Path | None = None) -> InstructionWriterConfig:
    spool_root = _none_if_blank(_env(wiring.get("spool_root") or wiring.get("instr_write_path_prefix")))
    if not spool_root:
        raise InstructionWriterConfigError("instruction_writer.wiring.spool_root is required")
    event_bus_root = _none_if_blank(_env(wiring.get("event_bus_root")))
    if not event_bus_root:
        raise InstructionWriterConfigError("instruction_writer.wiring.event_bus_root is required")

    instance = _none_if_blank(_env(wiring.get("instance"))) or _default_instance()
    log_level = str(_env(wiring.get("log_level") or "INFO")).strip().upper()
    if log_level not in _LOG_LEVELS:
        raise InstructionWriterConfigError(f"unsupported log_level: {log_level}")
    metrics_path = _none_if_blank(_env(wiring.get("metrics_path")))
    ledger_locator = "memory"
    if "ledger_locator" in wiring:
        # An explicit locator that resolves blank (an unset DSN variable) must
        # not quietly become the non-durable in-memory ledger.
        ledger_locator = _none_if_blank(_env(wiring.get("ledger_locator")))
        if not ledger_locator:
            raise InstructionWriterConfigError("instruction_writer.wiring.ledger_locator resolved to an empty value")

    return InstructionWriterConfig(
        profile_path=profile_path,
        spool_root=Path(spool_root),
        instance=instance,
        ledger_locator=ledger_locator,
        event_bus_root=Path(event_bus_root),
        instruction_topic=str(_env(wiring.get("instruction_topic") or DEFAULT_INSTRUCTION_TOPIC)).strip(),
        cleanup_topic=str(_env(wiring.get("cleanup_topic") or DEFAULT_CLEANUP_TOPIC)).strip(),
        purge_topic=str(_env(wiring.get("purge_topic") or DEFAULT_PURGE_TOPIC)).strip(),
        poll_max_records=max(1, _int(wiring.get("poll_max_records"), 50, "poll_max_records")),
        poll_sleep_seconds=max(0.05, _float(wiring.get("poll_sleep_seconds"), 0.5, "poll_sleep_seconds")),
        metrics_path=Path(metrics_path) if metrics_path else None,
        log_level=log_level,
    )


def _default_instance() -> str:
    zonename = (os.getenv("ZONENAME") or "").strip()
    if zonename:
        return zonename
    return socket.gethostname()


def _env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    return os.getenv(match.group(1), match.group(2) or "")


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


def _int(value: Any, default: int, field_name: str) -> int:
    raw = _env(value)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InstructionWriterConfigError(f"{field_name} must be an integer: {raw!r}") from exc


def _float(value: Any, default: float, field_name: str) -> float:
    raw = _env(value)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise InstructionWriterConfigError(f"{field_name} must be a number: {raw!r}") from exc

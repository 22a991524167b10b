"""Instruction writer contracts: records, batches, cleanup evidence."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


class InstructionWriterError(Exception):
    """Base error for the instruction writer."""


class InstructionContractError(InstructionWriterError, ValueError):
    """Raised when an instruction payload is invalid."""


@dataclass(frozen=True)
class StorageNodeRef:
    node: str

    def __post_init__(self) -> None:
        if not str(self.node or "").strip():
            raise InstructionContractError("storage node identifier is required")

    def as_dict(self) -> dict[str, Any]:
        return {"node": self.node}

    @classmethod
    def from_payload(cls, payload: Any) -> "StorageNodeRef":
        if isinstance(payload, StorageNodeRef):
            return payload
        if isinstance(payload, Mapping):
            return cls(node=_required(payload.get("node"), "shards[].node"))
        return cls(node=_required(payload, "shards[]"))


@dataclass
class InstructionRecord:
    """One pending-deletion decision for one object.

    ``shards`` lists the storage nodes that still hold a replica and have not
    yet had an instruction durably written for them. ``fields`` are the
    opaque content columns copied verbatim into the instruction file; the
    first two are conventionally the account and object identifiers.
    """

    key: str
    size: int
    shards: list[StorageNodeRef] = field(default_factory=list)
    fields: list[str | None] = field(default_factory=list)
    cleaned: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InstructionRecord":
        if not isinstance(payload, Mapping):
            raise InstructionContractError("record must be a mapping")
        shards = payload.get("shards")
        if shards is None:
            shards = []
        if not isinstance(shards, (list, tuple)):
            raise InstructionContractError("record.shards must be a list")
        fields = payload.get("fields")
        if fields is None:
            fields = []
        if not isinstance(fields, (list, tuple)):
            raise InstructionContractError("record.fields must be a list")
        return cls(
            key=_required(payload.get("key"), "record.key"),
            size=_size(payload.get("size")),
            shards=[StorageNodeRef.from_payload(item) for item in shards],
            fields=[None if item is None else str(item) for item in fields],
            cleaned=bool(payload.get("cleaned", False)),
        )

    def shard_nodes(self) -> tuple[str, ...]:
        return tuple(ref.node for ref in self.shards)

    def missing_identifiers(self) -> bool:
        """True when the account or object field is absent or empty."""
        account = self.fields[0] if len(self.fields) > 0 else None
        obj = self.fields[1] if len(self.fields) > 1 else None
        return not account or not obj

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "size": self.size,
            "shards": [ref.as_dict() for ref in self.shards],
            "fields": list(self.fields),
            "cleaned": self.cleaned,
        }


@dataclass(frozen=True)
class InstructionBatch:
    node: str
    records: tuple[InstructionRecord, ...]

    def __post_init__(self) -> None:
        validate_node_token(self.node)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InstructionBatch":
        if not isinstance(payload, Mapping):
            raise InstructionContractError("instruction must be a mapping")
        rows = payload.get("records")
        if not isinstance(rows, (list, tuple)):
            raise InstructionContractError("instruction.records must be a list")
        return cls(
            node=_required(payload.get("node"), "instruction.node"),
            records=tuple(InstructionRecord.from_payload(row) for row in rows),
        )

    def as_dict(self) -> dict[str, Any]:
        return {"node": self.node, "records": [record.as_dict() for record in self.records]}


@dataclass(frozen=True)
class CleanupRecord:
    key: str
    size: int
    shards: tuple[StorageNodeRef, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "size": self.size,
            "shards": [ref.as_dict() for ref in self.shards],
        }


@dataclass(frozen=True)
class BatchOutcome:
    node: str
    path: str | None
    record_count: int
    written: bool
    cleanup: tuple[CleanupRecord, ...] = ()
    error: str | None = None


def validate_node_token(node: str) -> str:
    """Storage node identifiers become a directory name and a file-name token."""
    text = str(node or "").strip()
    if not text:
        raise InstructionContractError("instruction.node is required")
    if text != node:
        raise InstructionContractError(f"instruction.node has surrounding whitespace: {node!r}")
    if "/" in text or "\\" in text or "\x00" in text or text in {".", ".."}:
        raise InstructionContractError(f"instruction.node is not a single path segment: {node!r}")
    return text


def _required(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise InstructionContractError(f"{field_name} is required")
    return str(value)


def _size(value: Any) -> int:
    if isinstance(value, bool):
        raise InstructionContractError("record.size must be a number")
    try:
        size = int(value or 0)
    except (TypeError, ValueError) as exc:
        raise InstructionContractError(f"record.size must be a number: {value!r}") from exc
    if size < 0:
        raise InstructionContractError("record.size must be >= 0")
    return size

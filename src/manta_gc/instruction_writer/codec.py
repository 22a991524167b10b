"""Spool path naming and instruction line format.

Both must stay byte-compatible with the offline mako collector. Instruction
objects were historically uploaded as

    /poseidon/stor/manta_gc/mako/<storage-id>/$NOW-$MARLIN_JOB-X-$UUID-mako-<storage-id>

The collector only relies on the leading timestamp and the trailing storage
id, so the job slot carries the instance (zone) name and the UUID slot a
fresh token per batch.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path
import uuid

from .contracts import validate_node_token


INSTRUCTION_TAG = "mako"
TIMESTAMP_FORMAT = "%Y-%m-%d-%H:%M:%S"


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _new_token() -> str:
    return str(uuid.uuid4())


class InstructionPathCodec:
    def __init__(
        self,
        *,
        root: Path | str,
        instance: str,
        clock: Callable[[], datetime] | None = None,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self.root = Path(root)
        self.instance = str(instance or "").strip()
        if not self.instance:
            raise ValueError("instance is required")
        self._clock = clock or _utc_now
        self._token_factory = token_factory or _new_token

    def timestamp(self) -> str:
        now = self._clock()
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        return now.strftime(TIMESTAMP_FORMAT)

    def object_name(self, node: str, *, token: str | None = None) -> str:
        node = validate_node_token(node)
        token = token or self._token_factory()
        return "-".join([self.timestamp(), self.instance, "X", token, INSTRUCTION_TAG, node])

    def instruction_path(self, node: str, *, token: str | None = None) -> Path:
        return self.root / validate_node_token(node) / self.object_name(node, token=token)

    def node_dir(self, node: str) -> Path:
        return self.root / validate_node_token(node)


def format_instruction_line(node: str, fields: Sequence[str | None]) -> str:
    columns = [INSTRUCTION_TAG, node]
    columns.extend("" if value is None else str(value) for value in fields)
    return "\t".join(columns)


def format_instruction_lines(node: str, rows: Sequence[Sequence[str | None]]) -> str:
    """One tab-separated line per record, newline-joined, one trailing newline."""
    return "\n".join(format_instruction_line(node, row) for row in rows) + "\n"

"""Keyed replica ledger: record key -> storage nodes still awaiting an instruction.

Records are shared by every in-flight batch for the nodes they reside on.
Instead of mutating a shared object, each batch performs an atomic
lookup-and-mutate against this ledger, which also owns the exactly-once
cleanup claim and the instruction bus checkpoint.

The ledger remembers which node's batch emptied a record's replica set.
Only a batch for that node may claim the cleanup, so the claim always
follows the write that actually drained the record, even when a stale batch
for another node is redelivered afterwards.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
import re
import sqlite3
import threading
from typing import Any, Protocol

from .contracts import InstructionRecord


class ReplicaLedger(Protocol):
    def release(self, record: InstructionRecord, node: str) -> tuple[str, ...]:
        ...

    def claim_cleanup(self, key: str, node: str) -> bool:
        ...

    def unclaim_cleanup(self, keys: Iterable[str]) -> None:
        ...

    def remaining(self, key: str) -> tuple[str, ...] | None:
        ...

    def is_cleaned(self, key: str) -> bool:
        ...

    def purge(self, keys: Iterable[str]) -> int:
        ...

    def next_offset(self, *, topic: str, partition: int) -> int | None:
        ...

    def advance(self, *, topic: str, partition: int, offset: int) -> None:
        ...


def remove_replica(replicas: list[str], node: str) -> bool:
    """Remove ``node`` from ``replicas`` only on an exact match.

    A missing node leaves the list untouched; it must never fall through to
    removing some other entry.
    """
    try:
        index = replicas.index(node)
    except ValueError:
        return False
    del replicas[index]
    return True


def _seed_nodes(record: InstructionRecord) -> list[str]:
    return list(dict.fromkeys(record.shard_nodes()))


@dataclass
class _LedgerEntry:
    size: int
    remaining: list[str]
    cleaned: bool = False
    drained_by: str | None = None


@dataclass
class InMemoryReplicaLedger:
    entries: dict[str, _LedgerEntry] = field(default_factory=dict)
    checkpoints: dict[tuple[str, int], int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def release(self, record: InstructionRecord, node: str) -> tuple[str, ...]:
        with self._lock:
            entry = self.entries.get(record.key)
            if entry is None:
                entry = _LedgerEntry(size=record.size, remaining=_seed_nodes(record), cleaned=record.cleaned)
                self.entries[record.key] = entry
            remove_replica(entry.remaining, node)
            if not entry.remaining and entry.drained_by is None:
                entry.drained_by = node
            return tuple(entry.remaining)

    def claim_cleanup(self, key: str, node: str) -> bool:
        with self._lock:
            entry = self.entries.get(key)
            if entry is None or entry.remaining or entry.cleaned:
                return False
            if entry.drained_by != node:
                return False
            entry.cleaned = True
            return True

    def unclaim_cleanup(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                entry = self.entries.get(key)
                if entry is not None:
                    entry.cleaned = False

    def remaining(self, key: str) -> tuple[str, ...] | None:
        with self._lock:
            entry = self.entries.get(key)
            return None if entry is None else tuple(entry.remaining)

    def is_cleaned(self, key: str) -> bool:
        with self._lock:
            entry = self.entries.get(key)
            return bool(entry and entry.cleaned)

    def purge(self, keys: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self.entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def next_offset(self, *, topic: str, partition: int) -> int | None:
        with self._lock:
            return self.checkpoints.get((str(topic), int(partition)))

    def advance(self, *, topic: str, partition: int, offset: int) -> None:
        with self._lock:
            self.checkpoints[(str(topic), int(partition))] = int(offset) + 1


class SqlReplicaLedger:
    """Replica ledger persisted in SQLite or Postgres.

    One row per outstanding replica, so removing a node is a single
    ``DELETE`` and the cleanup claim is a conditional ``UPDATE`` whose
    rowcount decides the single winner. Seeding a record and its replica
    rows happens in one transaction; a concurrent seed of the same key
    blocks on the record insert and then finds it present.
    """

    def __init__(self, *, locator: str) -> None:
        self.locator = str(locator or "").strip()
        if not self.locator:
            raise ValueError("replica ledger locator is required")
        self.backend = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        if self.backend == "sqlite":
            Path(_sqlite_path(self.locator)).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def release(self, record: InstructionRecord, node: str) -> tuple[str, ...]:
        with self._connect() as conn:
            inserted = conn.execute(
                *self._sql_with_params(
                    """
                    INSERT INTO replica_ledger_records (record_key, size, cleaned, first_seen_utc)
                    VALUES ({p1}, {p2}, {p3}, {p4})
                    ON CONFLICT (record_key) DO NOTHING
                    """,
                    (record.key, int(record.size), 1 if record.cleaned else 0, _utc_now()),
                )
            ).rowcount
            if inserted == 1:
                for position, seed in enumerate(_seed_nodes(record)):
                    conn.execute(
                        *self._sql_with_params(
                            """
                            INSERT INTO replica_ledger_refs (record_key, node, position)
                            VALUES ({p1}, {p2}, {p3})
                            ON CONFLICT (record_key, node) DO NOTHING
                            """,
                            (record.key, seed, position),
                        )
                    )
            if self.backend == "postgres":
                # Releases of one key run one at a time, so the drain check
                # below sees the other batches' deletes. SQLite's write lock
                # already serializes them.
                conn.execute(
                    *self._sql_with_params(
                        "SELECT record_key FROM replica_ledger_records WHERE record_key = {p1} FOR UPDATE",
                        (record.key,),
                    )
                )
            conn.execute(
                *self._sql_with_params(
                    "DELETE FROM replica_ledger_refs WHERE record_key = {p1} AND node = {p2}",
                    (record.key, str(node)),
                )
            )
            conn.execute(
                *self._sql_with_params(
                    """
                    UPDATE replica_ledger_records
                       SET drained_by = {p2}
                     WHERE record_key = {p1}
                       AND drained_by IS NULL
                       AND NOT EXISTS (
                           SELECT 1 FROM replica_ledger_refs
                            WHERE replica_ledger_refs.record_key = replica_ledger_records.record_key
                       )
                    """,
                    (record.key, str(node)),
                )
            )
            rows = conn.execute(
                *self._sql_with_params(
                    "SELECT node FROM replica_ledger_refs WHERE record_key = {p1} ORDER BY position",
                    (record.key,),
                )
            ).fetchall()
        return tuple(str(row[0]) for row in rows)

    def claim_cleanup(self, key: str, node: str) -> bool:
        with self._connect() as conn:
            updated = conn.execute(
                *self._sql_with_params(
                    """
                    UPDATE replica_ledger_records
                       SET cleaned = 1,
                           cleaned_at_utc = {p3}
                     WHERE record_key = {p1}
                       AND cleaned = 0
                       AND drained_by = {p2}
                       AND NOT EXISTS (
                           SELECT 1 FROM replica_ledger_refs
                            WHERE replica_ledger_refs.record_key = replica_ledger_records.record_key
                       )
                    """,
                    (str(key), str(node), _utc_now()),
                )
            ).rowcount
        return updated == 1

    def unclaim_cleanup(self, keys: Iterable[str]) -> None:
        """Best-effort rollback of cleanup claims whose notification failed."""
        with self._connect() as conn:
            for key in keys:
                conn.execute(
                    *self._sql_with_params(
                        """
                        UPDATE replica_ledger_records
                           SET cleaned = 0,
                               cleaned_at_utc = NULL
                         WHERE record_key = {p1}
                        """,
                        (str(key),),
                    )
                )

    def remaining(self, key: str) -> tuple[str, ...] | None:
        with self._connect() as conn:
            known = conn.execute(
                *self._sql_with_params(
                    "SELECT 1 FROM replica_ledger_records WHERE record_key = {p1}",
                    (str(key),),
                )
            ).fetchone()
            if known is None:
                return None
            rows = conn.execute(
                *self._sql_with_params(
                    "SELECT node FROM replica_ledger_refs WHERE record_key = {p1} ORDER BY position",
                    (str(key),),
                )
            ).fetchall()
        return tuple(str(row[0]) for row in rows)

    def is_cleaned(self, key: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params(
                    "SELECT cleaned FROM replica_ledger_records WHERE record_key = {p1}",
                    (str(key),),
                )
            ).fetchone()
        return bool(row and int(row[0]) == 1)

    def purge(self, keys: Iterable[str]) -> int:
        removed = 0
        with self._connect() as conn:
            for key in keys:
                conn.execute(
                    *self._sql_with_params(
                        "DELETE FROM replica_ledger_refs WHERE record_key = {p1}",
                        (str(key),),
                    )
                )
                removed += conn.execute(
                    *self._sql_with_params(
                        "DELETE FROM replica_ledger_records WHERE record_key = {p1}",
                        (str(key),),
                    )
                ).rowcount
        return removed

    def next_offset(self, *, topic: str, partition: int) -> int | None:
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params(
                    """
                    SELECT next_offset
                    FROM replica_ledger_checkpoints
                    WHERE topic = {p1}
                      AND partition_id = {p2}
                    """,
                    (str(topic), int(partition)),
                )
            ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def advance(self, *, topic: str, partition: int, offset: int) -> None:
        with self._connect() as conn:
            conn.execute(
                *self._sql_with_params(
                    """
                    INSERT INTO replica_ledger_checkpoints (
                        topic, partition_id, next_offset, updated_at_utc
                    ) VALUES ({p1}, {p2}, {p3}, {p4})
                    ON CONFLICT (topic, partition_id) DO UPDATE SET
                        next_offset = excluded.next_offset,
                        updated_at_utc = excluded.updated_at_utc
                    """,
                    (str(topic), int(partition), int(offset) + 1, _utc_now()),
                )
            )

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        if self.backend == "postgres":
            import psycopg

            with psycopg.connect(self.locator) as conn:
                yield conn
            return
        conn = sqlite3.connect(_sqlite_path(self.locator), timeout=30.0)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS replica_ledger_records (
                    record_key TEXT PRIMARY KEY,
                    size BIGINT NOT NULL,
                    cleaned INTEGER NOT NULL DEFAULT 0,
                    drained_by TEXT,
                    first_seen_utc TEXT NOT NULL,
                    cleaned_at_utc TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS replica_ledger_refs (
                    record_key TEXT NOT NULL,
                    node TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (record_key, node)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS replica_ledger_checkpoints (
                    topic TEXT NOT NULL,
                    partition_id INTEGER NOT NULL,
                    next_offset BIGINT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (topic, partition_id)
                )
                """
            )

    def _sql_with_params(self, sql: str, params: tuple[Any, ...]) -> tuple[str, tuple[Any, ...]]:
        return _sql(sql, self.backend), _ordered_params(sql, params)


def build_replica_ledger(locator: str | None) -> ReplicaLedger:
    text = str(locator or "").strip()
    if not text or text == "memory":
        return InMemoryReplicaLedger()
    return SqlReplicaLedger(locator=text)


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


_PLACEHOLDER_PATTERN = re.compile(r"\{p(\d+)\}")


def _sql(sql: str, backend: str) -> str:
    if backend == "sqlite":
        return _PLACEHOLDER_PATTERN.sub("?", sql)
    if backend == "postgres":
        return _PLACEHOLDER_PATTERN.sub("%s", sql)
    raise ValueError(f"unsupported backend: {backend}")


def _ordered_params(sql: str, params: tuple[Any, ...]) -> tuple[Any, ...]:
    if not params:
        return tuple()
    ordered: list[Any] = []
    for token in _PLACEHOLDER_PATTERN.findall(sql):
        idx = int(token) - 1
        if idx < 0 or idx >= len(params):
            raise ValueError(f"placeholder index out of range: p{token}")
        ordered.append(params[idx])
    return tuple(ordered)


def _sqlite_path(locator: str) -> str:
    text = str(locator or "").strip()
    if text.startswith("sqlite:///"):
        return text[len("sqlite:///") :]
    if text.startswith("sqlite://"):
        return text[len("sqlite://") :]
    return text


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()

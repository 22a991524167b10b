from __future__ import annotations

from pathlib import Path

import pytest

from manta_gc.instruction_writer.codec import InstructionPathCodec
from manta_gc.instruction_writer.contracts import CleanupRecord, InstructionBatch, InstructionRecord, StorageNodeRef
from manta_gc.instruction_writer.ledger import InMemoryReplicaLedger
from manta_gc.instruction_writer.lifecycle import (
    ControlSignal,
    InstructionChannel,
    LifecycleState,
    UnknownControlSignalError,
)
from manta_gc.instruction_writer.notifier import CallbackCleanupNotifier
from manta_gc.instruction_writer.processor import InstructionBatchProcessor
from manta_gc.instruction_writer.spool import SpoolConfigurationError, SpoolWriter
from manta_gc.instruction_writer.writer import InstructionWriter


def _writer(root: Path, events: list[LifecycleState], cleanups: list[list[CleanupRecord]] | None = None) -> InstructionWriter:
    spool = SpoolWriter(root)
    processor = InstructionBatchProcessor(
        codec=InstructionPathCodec(root=root, instance="zone-1"),
        spool=spool,
        ledger=InMemoryReplicaLedger(),
        notifier=CallbackCleanupNotifier((cleanups if cleanups is not None else []).append),
    )
    return InstructionWriter(processor=processor, spool=spool, listeners=[events.append])


def _batch(key: str, node: str = "s1") -> InstructionBatch:
    record = InstructionRecord(key=key, size=5, shards=[StorageNodeRef(node=node)], fields=["acct", "obj"])
    return InstructionBatch(node=node, records=(record,))


def test_construction_provisions_root_and_enters_running(tmp_path: Path) -> None:
    events: list[LifecycleState] = []
    writer = _writer(tmp_path / "spool" / "mako", events)
    assert (tmp_path / "spool" / "mako").is_dir()
    assert writer.state == LifecycleState.RUNNING
    assert events == [LifecycleState.RUNNING]
    assert writer.describe() == {"component": "instruction writer", "state": "running"}
    assert writer.channel.subscribed is True


def test_root_provisioning_failure_aborts_startup(tmp_path: Path) -> None:
    blocker = tmp_path / "spool"
    blocker.write_text("", encoding="utf-8")
    with pytest.raises(SpoolConfigurationError):
        _writer(blocker, [])


def test_pause_stops_delivery_and_resume_restores_it(tmp_path: Path) -> None:
    events: list[LifecycleState] = []
    cleanups: list[list[CleanupRecord]] = []
    writer = _writer(tmp_path / "spool", events, cleanups)

    assert writer.pause() == LifecycleState.PAUSED
    assert writer.channel.subscribed is False
    assert writer.accepting is False
    assert writer.dispatch(_batch("k1")) is None
    assert not (tmp_path / "spool" / "s1").exists()

    assert writer.resume() == LifecycleState.RUNNING
    outcome = writer.dispatch(_batch("k1"))
    assert outcome is not None and outcome.written is True
    assert [[item.key for item in batch] for batch in cleanups] == [["k1"]]
    assert events == [LifecycleState.RUNNING, LifecycleState.PAUSED, LifecycleState.RUNNING]


def test_reasserting_current_state_reannounces_it(tmp_path: Path) -> None:
    events: list[LifecycleState] = []
    writer = _writer(tmp_path / "spool", events)

    assert writer.resume() == LifecycleState.RUNNING
    writer.pause()
    assert writer.pause() == LifecycleState.PAUSED
    assert events == [
        LifecycleState.RUNNING,
        LifecycleState.RUNNING,
        LifecycleState.PAUSED,
        LifecycleState.PAUSED,
    ]


def test_shutdown_is_terminal_and_idempotent(tmp_path: Path, caplog) -> None:
    events: list[LifecycleState] = []
    writer = _writer(tmp_path / "spool", events)

    assert writer.shutdown() == LifecycleState.SHUTDOWN
    with caplog.at_level("DEBUG", logger="manta_gc.instruction_writer.writer"):
        assert writer.shutdown() == LifecycleState.SHUTDOWN
    assert "Received shutdown event multiple times!" in caplog.text

    assert writer.resume() == LifecycleState.SHUTDOWN
    assert writer.pause() == LifecycleState.SHUTDOWN
    assert writer.dispatch(_batch("k1")) is None
    assert events == [LifecycleState.RUNNING, LifecycleState.SHUTDOWN]
    assert writer.describe()["state"] == "shutdown"


def test_shutdown_from_paused(tmp_path: Path) -> None:
    events: list[LifecycleState] = []
    writer = _writer(tmp_path / "spool", events)
    writer.pause()
    assert writer.signal("shutdown") == LifecycleState.SHUTDOWN
    assert events[-1] == LifecycleState.SHUTDOWN


def test_signal_names_are_parsed(tmp_path: Path) -> None:
    writer = _writer(tmp_path / "spool", [])
    assert writer.signal("PAUSE") == LifecycleState.PAUSED
    assert writer.signal(ControlSignal.RESUME) == LifecycleState.RUNNING
    with pytest.raises(UnknownControlSignalError):
        writer.signal("restart")


def test_listener_can_observe_state_during_transition(tmp_path: Path) -> None:
    seen: list[str] = []
    writer = _writer(tmp_path / "spool", [])
    writer.add_lifecycle_listener(lambda state: seen.append(writer.describe()["state"]))
    writer.pause()
    assert seen == ["paused"]


def test_in_flight_is_zero_when_idle(tmp_path: Path) -> None:
    writer = _writer(tmp_path / "spool", [])
    writer.dispatch(_batch("k1"))
    assert writer.in_flight == 0
    assert writer.wait_idle(timeout=0.1) is True


def test_channel_delivers_only_while_subscribed() -> None:
    channel = InstructionChannel()
    assert channel.deliver(_batch("k1")) is None
    received: list[InstructionBatch] = []
    channel.subscribe(lambda batch: received.append(batch) or "ok")
    assert channel.deliver(_batch("k2")) == "ok"
    channel.unsubscribe()
    assert channel.deliver(_batch("k3")) is None
    assert [batch.records[0].key for batch in received] == ["k2"]

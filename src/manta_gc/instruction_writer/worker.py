"""Instruction writer runtime worker.

Consumes instruction batches from the file bus, hands them to the
instruction writer and publishes cleanup sets on the cleanup topic. Keys
the upstream owner reports as deleted on the purge topic are dropped from
the replica ledger.
"""

from __future__ import annotations

import argparse
from collections import deque
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
import logging
from pathlib import Path
import signal
import threading
from typing import Any

from manta_gc.event_bus import EbRecord, EventBusReader, FileEventBusPublisher
from manta_gc.logging_utils import configure_logging

from .codec import InstructionPathCodec
from .config import InstructionWriterConfig, load_worker_config
from .contracts import InstructionBatch, InstructionContractError
from .ledger import ReplicaLedger, build_replica_ledger
from .lifecycle import ControlSignal, LifecycleState, parse_control_signal
from .notifier import BusCleanupNotifier
from .observability import InstructionWriterMetrics, build_health_payload, export_health
from .processor import InstructionBatchProcessor
from .spool import SpoolWriter
from .writer import InstructionWriter


logger = logging.getLogger("manta_gc.instruction_writer.worker")

_SIGNAL_CONTROLS = {
    "SIGTERM": ControlSignal.SHUTDOWN,
    "SIGINT": ControlSignal.SHUTDOWN,
    "SIGUSR1": ControlSignal.PAUSE,
    "SIGUSR2": ControlSignal.RESUME,
}


class InstructionWriterWorker:
    def __init__(
        self,
        config: InstructionWriterConfig,
        *,
        ledger: ReplicaLedger | None = None,
        clock: Callable[[], datetime] | None = None,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self.config = config
        self.ledger = ledger or build_replica_ledger(config.ledger_locator)
        self.metrics = InstructionWriterMetrics(instance=config.instance)
        self._reader = EventBusReader(config.event_bus_root)
        self.notifier = BusCleanupNotifier(
            FileEventBusPublisher(config.event_bus_root),
            topic=config.cleanup_topic,
        )
        spool = SpoolWriter(config.spool_root)
        codec = InstructionPathCodec(
            root=config.spool_root,
            instance=config.instance,
            clock=clock,
            token_factory=token_factory,
        )
        processor = InstructionBatchProcessor(
            codec=codec,
            spool=spool,
            ledger=self.ledger,
            notifier=self.notifier,
            collector=self.metrics,
            run_metrics=self.metrics,
        )
        self._controls: deque[ControlSignal] = deque()
        self._wake = threading.Event()
        self.writer = InstructionWriter(processor=processor, spool=spool, listeners=[self._on_lifecycle])

    def request(self, value: str | ControlSignal) -> None:
        """Queue a control signal; applied by the polling loop between batches."""
        self._controls.append(parse_control_signal(value))
        self._wake.set()

    def run_once(self) -> int:
        processed = 0
        topic = self.config.instruction_topic
        self._apply_controls()
        for partition in self._reader.partitions(topic):
            if not self.writer.accepting:
                break
            from_offset = self.ledger.next_offset(topic=topic, partition=partition) or 0
            for row in self._reader.iter_read(
                topic,
                partition=partition,
                from_offset=from_offset,
                max_records=self.config.poll_max_records,
            ):
                self._apply_controls()
                if not self.writer.accepting:
                    break
                batch = self._parse(row)
                if batch is not None:
                    outcome = self.writer.dispatch(batch)
                    if outcome is None:
                        # Detached between the state check and delivery; the
                        # row stays unread for the next cycle.
                        break
                    processed += 1
                self.ledger.advance(topic=topic, partition=partition, offset=row.offset)
        if self.writer.state != LifecycleState.SHUTDOWN:
            self._consume_purges()
        self._export()
        return processed

    def run_forever(self) -> None:
        while True:
            self._apply_controls()
            if self.writer.state == LifecycleState.SHUTDOWN:
                break
            processed = self.run_once() if self.writer.accepting else 0
            if processed == 0:
                self._wake.wait(self.config.poll_sleep_seconds)
                self._wake.clear()
        self._export()
        logger.info("Instruction writer worker stopped describe=%s", self.writer.describe())

    def install_signal_handlers(self) -> None:
        for name, control in _SIGNAL_CONTROLS.items():
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            signal.signal(signum, self._signal_handler(control))

    def _signal_handler(self, control: ControlSignal) -> Callable[[int, Any], None]:
        # Handlers only queue the control; no logging or I/O here.
        def _handler(signum: int, frame: Any) -> None:
            self._controls.append(control)
            self._wake.set()

        return _handler

    def _apply_controls(self) -> None:
        while self._controls:
            control = self._controls.popleft()
            self.writer.signal(control)

    def _consume_purges(self) -> int:
        """Forget records the upstream owner confirmed it deleted.

        Cleaned entries stay in the ledger until then, so a redelivered batch
        for a drained record cannot announce it a second time.
        """
        topic = self.config.purge_topic
        purged = 0
        for partition in self._reader.partitions(topic):
            from_offset = self.ledger.next_offset(topic=topic, partition=partition) or 0
            for row in self._reader.iter_read(
                topic,
                partition=partition,
                from_offset=from_offset,
                max_records=self.config.poll_max_records,
            ):
                keys = self._purged_keys(row)
                if keys:
                    removed = self.ledger.purge(keys)
                    purged += removed
                    self.metrics.bump("purged_total", removed)
                    logger.debug("Purged ledger records offset=%s keys=%s removed=%s", row.offset, len(keys), removed)
                self.ledger.advance(topic=topic, partition=partition, offset=row.offset)
        return purged

    def _purged_keys(self, row: EbRecord) -> list[str]:
        payload = row.payload if row.error is None else None
        keys = payload.get("purged") if isinstance(payload, dict) else None
        if row.error is not None or not isinstance(keys, list):
            self._skip(row, row.error or "purge payload must carry a 'purged' list")
            return []
        return [str(key) for key in keys if str(key or "").strip()]

    def _skip(self, row: EbRecord, error: str) -> None:
        self.metrics.bump("contract_error_total")
        logger.warning(
            "Instruction writer skipped invalid record topic=%s partition=%s offset=%s error=%s",
            row.topic,
            row.partition,
            row.offset,
            error[:256],
        )

    def _parse(self, row: EbRecord) -> InstructionBatch | None:
        if row.error is not None:
            self._skip(row, row.error)
            return None
        try:
            return InstructionBatch.from_payload(row.payload)
        except InstructionContractError as exc:
            self._skip(row, str(exc))
            return None

    def _on_lifecycle(self, state: LifecycleState) -> None:
        logger.info("Instruction writer state=%s instance=%s", state.value, self.config.instance)

    def _export(self) -> None:
        metrics_path = self.config.metrics_path
        if metrics_path is None:
            return
        snapshot = self.metrics.export(metrics_path)
        health = build_health_payload(
            instance=self.config.instance,
            state=self.writer.state.value,
            counters=snapshot["metrics"],
        )
        export_health(path=metrics_path.parent / "last_health.json", payload=health)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Mako GC instruction writer worker")
    parser.add_argument("--profile", required=True, help="Path to instruction writer profile")
    parser.add_argument("--once", action="store_true", help="Process one polling cycle and exit")
    parser.add_argument("--poll-seconds", type=float, default=None, help="Override poll sleep seconds")
    args = parser.parse_args(argv)

    config = load_worker_config(Path(args.profile))
    if args.poll_seconds is not None and args.poll_seconds > 0:
        config = replace(config, poll_sleep_seconds=float(args.poll_seconds))
    configure_logging(config.log_level)
    worker = InstructionWriterWorker(config)
    if args.once:
        worker.run_once()
        worker.writer.shutdown()
        return
    worker.install_signal_handlers()
    worker.run_forever()


if __name__ == "__main__":
    main()

"""Instruction batch processor: release replicas, spool the file, then clean up."""

from __future__ import annotations

import logging

from .codec import InstructionPathCodec, format_instruction_lines
from .contracts import BatchOutcome, CleanupRecord, InstructionBatch, InstructionRecord, StorageNodeRef
from .ledger import ReplicaLedger
from .notifier import CleanupNotifier
from .observability import InstructionWriterMetrics, MetricsCollector
from .spool import SpoolWriteError, SpoolWriter


logger = logging.getLogger("manta_gc.instruction_writer.processor")


class InstructionBatchProcessor:
    def __init__(
        self,
        *,
        codec: InstructionPathCodec,
        spool: SpoolWriter,
        ledger: ReplicaLedger,
        notifier: CleanupNotifier,
        collector: MetricsCollector | None = None,
        run_metrics: InstructionWriterMetrics | None = None,
    ) -> None:
        self.codec = codec
        self.spool = spool
        self.ledger = ledger
        self.notifier = notifier
        self.collector = collector
        self.run_metrics = run_metrics

    def process(self, batch: InstructionBatch) -> BatchOutcome:
        node = batch.node
        keys: list[str] = []
        rows: list[list[str | None]] = []
        drained: list[InstructionRecord] = []

        self._bump("batches_total")
        for record in batch.records:
            # Once a record's replica set is empty it has been flushed to
            # every node it lives on and may leave the source table.
            remaining = self.ledger.release(record, node)
            record.shards = [StorageNodeRef(node=item) for item in remaining]
            if not remaining:
                drained.append(record)
            keys.append(record.key)
            rows.append(list(record.fields))
            if record.missing_identifiers():
                self._bump("validation_warning_total")
                logger.warning(
                    "Instruction record missing account/object information node=%s key=%s fields=%s",
                    node,
                    record.key,
                    record.fields,
                )

        if not rows:
            logger.debug("Empty instruction batch skipped node=%s", node)
            return BatchOutcome(node=node, path=None, record_count=0, written=False)

        path = self.codec.instruction_path(node)
        data = format_instruction_lines(node, rows)
        logger.info("Received instructions to write node=%s count=%s path=%s", node, len(rows), path)

        try:
            self.spool.write(path, data)
        except SpoolWriteError as exc:
            self._bump("write_error_total")
            logger.error(
                "Error encountered while writing mako GC instructions node=%s path=%s step=%s numlines=%s error=%s",
                node,
                exc.path,
                exc.step,
                len(rows),
                exc.cause,
            )
            return BatchOutcome(
                node=node,
                path=str(path),
                record_count=len(rows),
                written=False,
                error=str(exc),
            )

        logger.info("Wrote mako GC instruction file to spool dir node=%s path=%s keys=%s", node, path, keys)
        self._bump("batches_written_total")
        self._bump("records_written_total", len(rows))
        self._observe(len(rows), node)

        cleanup: list[CleanupRecord] = []
        claimed: list[InstructionRecord] = []
        for record in drained:
            if record.cleaned or not self.ledger.claim_cleanup(record.key, node):
                continue
            record.cleaned = True
            claimed.append(record)
            cleanup.append(CleanupRecord(key=record.key, size=record.size))

        if cleanup:
            try:
                self.notifier.notify(cleanup)
            except Exception as exc:
                self._bump("notify_error_total")
                logger.exception("Cleanup notification failed node=%s path=%s keys=%s", node, path, [item.key for item in cleanup])
                self.ledger.unclaim_cleanup([record.key for record in claimed])
                for record in claimed:
                    record.cleaned = False
                return BatchOutcome(
                    node=node,
                    path=str(path),
                    record_count=len(rows),
                    written=True,
                    error=f"cleanup notification failed: {exc}",
                )
            self._bump("cleanup_total", len(cleanup))

        logger.debug("Finished writing instruction data node=%s path=%s cleaned=%s", node, path, len(cleanup))
        return BatchOutcome(
            node=node,
            path=str(path),
            record_count=len(rows),
            written=True,
            cleanup=tuple(cleanup),
        )

    def _observe(self, count: int, node: str) -> None:
        if self.collector is None:
            return
        try:
            self.collector.observe(count, {"manta_storage_id": node})
        except Exception:
            logger.exception("Metric observation failed node=%s count=%s", node, count)

    def _bump(self, key: str, delta: int = 1) -> None:
        if self.run_metrics is not None:
            self.run_metrics.bump(key, delta)

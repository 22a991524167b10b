"""Mako GC instruction writer service."""

from .codec import InstructionPathCodec, format_instruction_line, format_instruction_lines
from .contracts import (
    BatchOutcome,
    CleanupRecord,
    InstructionBatch,
    InstructionContractError,
    InstructionRecord,
    InstructionWriterError,
    StorageNodeRef,
)
from .ledger import InMemoryReplicaLedger, ReplicaLedger, SqlReplicaLedger, build_replica_ledger, remove_replica
from .lifecycle import ControlSignal, InstructionChannel, LifecycleState
from .notifier import BusCleanupNotifier, CallbackCleanupNotifier, CleanupNotifier
from .observability import InstructionWriterMetrics
from .processor import InstructionBatchProcessor
from .spool import SpoolConfigurationError, SpoolWriteError, SpoolWriter
from .writer import InstructionWriter

__all__ = [
    "BatchOutcome",
    "BusCleanupNotifier",
    "CallbackCleanupNotifier",
    "CleanupNotifier",
    "CleanupRecord",
    "ControlSignal",
    "InMemoryReplicaLedger",
    "InstructionBatch",
    "InstructionBatchProcessor",
    "InstructionChannel",
    "InstructionContractError",
    "InstructionPathCodec",
    "InstructionRecord",
    "InstructionWriter",
    "InstructionWriterError",
    "InstructionWriterMetrics",
    "LifecycleState",
    "ReplicaLedger",
    "SpoolConfigurationError",
    "SpoolWriteError",
    "SpoolWriter",
    "SqlReplicaLedger",
    "StorageNodeRef",
    "build_replica_ledger",
    "format_instruction_line",
    "format_instruction_lines",
    "remove_replica",
]

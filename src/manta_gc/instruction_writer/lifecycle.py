"""Instruction writer lifecycle states, control signals and subscription channel."""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
import logging
import threading
from typing import Any

from .contracts import InstructionBatch, InstructionWriterError


logger = logging.getLogger("manta_gc.instruction_writer.lifecycle")


class LifecycleState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    SHUTDOWN = "shutdown"


class ControlSignal(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    SHUTDOWN = "shutdown"


class UnknownControlSignalError(InstructionWriterError, ValueError):
    """Raised for control signal names outside pause/resume/shutdown."""


# (state, signal) -> next state. Pairs absent from the table are ignored.
TRANSITIONS: dict[tuple[LifecycleState, ControlSignal], LifecycleState] = {
    (LifecycleState.RUNNING, ControlSignal.PAUSE): LifecycleState.PAUSED,
    (LifecycleState.RUNNING, ControlSignal.RESUME): LifecycleState.RUNNING,
    (LifecycleState.RUNNING, ControlSignal.SHUTDOWN): LifecycleState.SHUTDOWN,
    (LifecycleState.PAUSED, ControlSignal.PAUSE): LifecycleState.PAUSED,
    (LifecycleState.PAUSED, ControlSignal.RESUME): LifecycleState.RUNNING,
    (LifecycleState.PAUSED, ControlSignal.SHUTDOWN): LifecycleState.SHUTDOWN,
}


def parse_control_signal(value: str | ControlSignal) -> ControlSignal:
    if isinstance(value, ControlSignal):
        return value
    try:
        return ControlSignal(str(value or "").strip().lower())
    except ValueError as exc:
        raise UnknownControlSignalError(f"unknown control signal: {value!r}") from exc


InstructionHandler = Callable[[InstructionBatch], Any]


class InstructionChannel:
    """Explicit subscription point for instruction delivery.

    ``deliver`` hands the batch to the current subscriber and returns its
    result, or ``None`` when nothing is subscribed. Subscription swaps hold
    the same lock as the handler lookup, so once ``unsubscribe`` returns no
    further batch reaches the detached handler. Handlers run outside the
    lock; overlapping deliveries are not serialized.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handler: InstructionHandler | None = None

    @property
    def subscribed(self) -> bool:
        with self._lock:
            return self._handler is not None

    def subscribe(self, handler: InstructionHandler) -> None:
        with self._lock:
            self._handler = handler

    def unsubscribe(self) -> None:
        with self._lock:
            self._handler = None

    def deliver(self, batch: InstructionBatch) -> Any:
        with self._lock:
            handler = self._handler
        if handler is None:
            logger.debug("Instruction not delivered, no subscriber node=%s", batch.node)
            return None
        return handler(batch)

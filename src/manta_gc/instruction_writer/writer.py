"""Mako instruction writer component.

Receives per-storage-node instruction batches and turns them into spool
files the offline mako GC scripts pick up. Batches are only accepted while
the component is running; ``pause`` and ``shutdown`` detach the processor
from the instruction channel on state entry.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
import logging
import threading
from typing import Any

from .contracts import BatchOutcome, InstructionBatch
from .lifecycle import (
    TRANSITIONS,
    ControlSignal,
    InstructionChannel,
    LifecycleState,
    parse_control_signal,
)
from .processor import InstructionBatchProcessor
from .spool import SpoolWriter


logger = logging.getLogger("manta_gc.instruction_writer.writer")

COMPONENT_NAME = "instruction writer"

LifecycleListener = Callable[[LifecycleState], None]


class InstructionWriter:
    def __init__(
        self,
        *,
        processor: InstructionBatchProcessor,
        spool: SpoolWriter,
        channel: InstructionChannel | None = None,
        listeners: Iterable[LifecycleListener] = (),
    ) -> None:
        self.processor = processor
        self.channel = channel or InstructionChannel()
        self._listeners: list[LifecycleListener] = list(listeners)
        self._state_lock = threading.RLock()
        self._idle = threading.Condition()
        self._in_flight = 0
        self._state: LifecycleState

        # Raises SpoolConfigurationError; nothing is subscribed until the
        # spool root exists.
        spool.ensure_root()
        with self._state_lock:
            self._enter(LifecycleState.RUNNING)

    @property
    def state(self) -> LifecycleState:
        with self._state_lock:
            return self._state

    @property
    def accepting(self) -> bool:
        return self.state == LifecycleState.RUNNING

    @property
    def in_flight(self) -> int:
        with self._idle:
            return self._in_flight

    def add_lifecycle_listener(self, listener: LifecycleListener) -> None:
        with self._state_lock:
            self._listeners.append(listener)

    def pause(self) -> LifecycleState:
        return self.signal(ControlSignal.PAUSE)

    def resume(self) -> LifecycleState:
        return self.signal(ControlSignal.RESUME)

    def shutdown(self) -> LifecycleState:
        """Stop accepting instructions. Writes already started are not awaited."""
        return self.signal(ControlSignal.SHUTDOWN)

    def signal(self, value: str | ControlSignal) -> LifecycleState:
        control = parse_control_signal(value)
        with self._state_lock:
            current = self.state
            if current == LifecycleState.SHUTDOWN:
                if control == ControlSignal.SHUTDOWN:
                    logger.debug("Received shutdown event multiple times!")
                else:
                    logger.debug("Ignoring %s signal after shutdown", control.value)
                return current
            target = TRANSITIONS.get((current, control))
            if target is None:
                logger.debug("Ignoring %s signal in state %s", control.value, current.value)
                return current
            if target == current:
                # Re-asserting the current state only re-announces it.
                self._emit(current)
                return current
            logger.debug("Instruction writer transition %s -> %s", current.value, target.value)
            self._enter(target)
            return target

    def dispatch(self, batch: InstructionBatch) -> BatchOutcome | None:
        """Offer a batch to the channel; ``None`` means it was not accepted."""
        return self.channel.deliver(batch)

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def describe(self) -> dict[str, Any]:
        return {
            "component": COMPONENT_NAME,
            "state": self.state.value,
        }

    def _enter(self, state: LifecycleState) -> None:
        if state == LifecycleState.RUNNING:
            self.channel.subscribe(self._handle)
        else:
            self.channel.unsubscribe()
        self._state = state
        self._emit(state)

    def _emit(self, state: LifecycleState) -> None:
        for listener in list(self._listeners):
            listener(state)

    def _handle(self, batch: InstructionBatch) -> BatchOutcome:
        with self._idle:
            self._in_flight += 1
        try:
            return self.processor.process(batch)
        finally:
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()

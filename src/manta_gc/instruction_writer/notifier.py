"""Cleanup notification to the upstream source-of-truth owner.

Delivery is synchronous: ``notify`` returns only once the consumer has taken
the cleanup set, and it is only ever called after the instruction file that
drained those records has been renamed into the spool directory.

A cleanup set is only sent when a batch drained at least one record.
Batches that drain nothing produce no event, so consumers must not treat
cleanup events as per-batch acknowledgements.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Protocol

from manta_gc.event_bus import EbRef, EventBusPublisher

from .contracts import CleanupRecord


DEFAULT_CLEANUP_TOPIC = "manta_gc.cleanup.v1"


class CleanupNotifier(Protocol):
    def notify(self, records: Sequence[CleanupRecord]) -> None:
        ...


class CallbackCleanupNotifier:
    def __init__(self, callback: Callable[[list[CleanupRecord]], None]) -> None:
        self._callback = callback

    def notify(self, records: Sequence[CleanupRecord]) -> None:
        self._callback(list(records))


class BusCleanupNotifier:
    """Publishes each cleanup set as one event on the cleanup topic."""

    def __init__(self, publisher: EventBusPublisher, *, topic: str = DEFAULT_CLEANUP_TOPIC) -> None:
        self.publisher = publisher
        self.topic = topic
        self.last_ref: EbRef | None = None

    def notify(self, records: Sequence[CleanupRecord]) -> None:
        if not records:
            return
        payload = {"cleanup": [record.as_dict() for record in records]}
        self.last_ref = self.publisher.publish(self.topic, records[0].key, payload)

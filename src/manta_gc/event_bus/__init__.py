"""Local event bus carrying instruction batches in and cleanup sets out."""

from .publisher import EbRef, EventBusPublisher, FileEventBusPublisher
from .reader import EbRecord, EventBusReader

__all__ = [
    "EbRecord",
    "EbRef",
    "EventBusPublisher",
    "EventBusReader",
    "FileEventBusPublisher",
]

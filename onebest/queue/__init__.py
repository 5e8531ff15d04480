"""Durable at-least-once queue and dead-letter queue over SQLite."""

from onebest.queue.models import (
    DeadLetter,
    DeadLetterReason,
    DlqFilter,
    QueueDepth,
    QueueMessage,
    TrackingState,
    TrackingStatus,
)
from onebest.queue.queue import DurableQueue


__all__ = [
    "DeadLetter",
    "DeadLetterReason",
    "DlqFilter",
    "DurableQueue",
    "QueueDepth",
    "QueueMessage",
    "TrackingState",
    "TrackingStatus",
]

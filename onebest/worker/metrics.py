"""Metrics collection for the event processing pipeline."""

from dataclasses import dataclass, field
from threading import Lock
from typing import ClassVar


@dataclass
class PipelineMetrics:
    """Metrics for worker message processing.

    Counters are updated from several worker threads, so every update
    takes the instance lock.

    Attributes:
        messages_received_total: Messages handed to a processor.
        messages_acked_total: Messages applied and acknowledged.
        duplicates_total: Messages acknowledged as idempotent replays.
        messages_rejected_total: Messages routed to the dead-letter queue.
        messages_retried_total: Messages left for redelivery.
        batches_total: Batches processed.
        apply_duration_ms: Cumulative duration of successful applies.
        rejections_by_reason: Dead-letter count per reason.
    """

    messages_received_total: int = 0
    messages_acked_total: int = 0
    duplicates_total: int = 0
    messages_rejected_total: int = 0
    messages_retried_total: int = 0
    batches_total: int = 0
    apply_duration_ms: float = 0.0
    rejections_by_reason: dict[str, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    _instance: ClassVar["PipelineMetrics | None"] = None

    @classmethod
    def get_instance(cls) -> "PipelineMetrics":
        """Get singleton metrics instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset metrics (primarily for testing)."""
        cls._instance = None

    def record_received(self, count: int = 1) -> None:
        """Record messages handed to a processor."""
        with self._lock:
            self.messages_received_total += count

    def record_acked(self, duration_ms: float, duplicate: bool = False) -> None:
        """Record an acknowledged message.

        Args:
            duration_ms: Apply duration in milliseconds.
            duplicate: Whether the message was an idempotent replay.
        """
        with self._lock:
            self.messages_acked_total += 1
            if duplicate:
                self.duplicates_total += 1
            else:
                self.apply_duration_ms += duration_ms

    def record_rejected(self, reason: str) -> None:
        """Record a dead-lettered message.

        Args:
            reason: Dead-letter reason.
        """
        with self._lock:
            self.messages_rejected_total += 1
            self.rejections_by_reason[reason] = (
                self.rejections_by_reason.get(reason, 0) + 1
            )

    def record_retried(self) -> None:
        """Record a message left for redelivery."""
        with self._lock:
            self.messages_retried_total += 1

    def record_batch(self) -> None:
        """Record a processed batch."""
        with self._lock:
            self.batches_total += 1

    @property
    def avg_apply_duration_ms(self) -> float:
        """Average duration of applied (non-duplicate) messages."""
        applied = self.messages_acked_total - self.duplicates_total
        if applied <= 0:
            return 0.0
        return self.apply_duration_ms / applied

    def to_dict(self) -> dict[str, float | int | dict[str, int]]:
        """Convert metrics to dictionary.

        Returns:
            Dictionary of metric name to value.
        """
        with self._lock:
            return {
                "messages_received_total": self.messages_received_total,
                "messages_acked_total": self.messages_acked_total,
                "duplicates_total": self.duplicates_total,
                "messages_rejected_total": self.messages_rejected_total,
                "messages_retried_total": self.messages_retried_total,
                "batches_total": self.batches_total,
                "apply_duration_ms": self.apply_duration_ms,
                "rejections_by_reason": dict(self.rejections_by_reason),
            }

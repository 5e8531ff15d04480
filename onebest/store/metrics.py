"""Metrics collection for the rank store."""

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass
class StoreMetrics:
    """Metrics for rank store operations.

    Attributes:
        rankings_created_total: Rankings inserted.
        rank_changes_total: Ranking rows whose rank changed.
        history_entries_total: Rank history entries appended.
        rankings_deleted_total: Rankings removed by scope clears.
        db_tx_duration_ms: Cumulative committed transaction duration.
        db_tx_count: Number of committed transactions.
        db_tx_failures_total: Number of rolled back transactions.
        db_busy_total: Write lock acquisitions that timed out.
    """

    rankings_created_total: int = 0
    rank_changes_total: int = 0
    history_entries_total: int = 0
    rankings_deleted_total: int = 0
    db_tx_duration_ms: float = 0.0
    db_tx_count: int = 0
    db_tx_failures_total: int = 0
    db_busy_total: int = 0

    _instance: ClassVar["StoreMetrics | None"] = None

    @classmethod
    def get_instance(cls) -> "StoreMetrics":
        """Get singleton metrics instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset metrics (primarily for testing)."""
        cls._instance = None

    def record_created(self) -> None:
        """Record a ranking insert."""
        self.rankings_created_total += 1

    def record_rank_changes(self, count: int) -> None:
        """Record rows whose rank changed.

        Args:
            count: Number of ranking rows rewritten.
        """
        self.rank_changes_total += count

    def record_history_entry(self) -> None:
        """Record an appended history entry."""
        self.history_entries_total += 1

    def record_deleted(self, count: int) -> None:
        """Record rankings deleted by a scope clear.

        Args:
            count: Number of rankings deleted.
        """
        self.rankings_deleted_total += count

    def record_tx_duration(self, duration_ms: float) -> None:
        """Record committed transaction duration.

        Args:
            duration_ms: Duration in milliseconds.
        """
        self.db_tx_duration_ms += duration_ms
        self.db_tx_count += 1

    def record_tx_failure(self) -> None:
        """Record a rolled back transaction."""
        self.db_tx_failures_total += 1

    def record_busy(self) -> None:
        """Record a write lock timeout."""
        self.db_busy_total += 1

    def to_dict(self) -> dict[str, float | int]:
        """Convert metrics to dictionary.

        Returns:
            Dictionary of metric name to value.
        """
        return {
            "rankings_created_total": self.rankings_created_total,
            "rank_changes_total": self.rank_changes_total,
            "history_entries_total": self.history_entries_total,
            "rankings_deleted_total": self.rankings_deleted_total,
            "db_tx_duration_ms": self.db_tx_duration_ms,
            "db_tx_count": self.db_tx_count,
            "db_tx_failures_total": self.db_tx_failures_total,
            "db_busy_total": self.db_busy_total,
        }

    @property
    def avg_tx_duration_ms(self) -> float:
        """Calculate average transaction duration.

        Returns:
            Average duration in milliseconds.
        """
        if self.db_tx_count == 0:
            return 0.0
        return self.db_tx_duration_ms / self.db_tx_count


@dataclass
class TransactionContext:
    """Context for a single transaction with timing.

    Attributes:
        tx_id: Unique transaction identifier.
        start_time_ns: Start time in nanoseconds.
        operation: The operation being performed.
    """

    tx_id: str
    start_time_ns: int
    operation: str
    affected_rows: int = field(default=0)

    def add_affected_rows(self, rows: int) -> None:
        """Add to the affected row count.

        Args:
            rows: Number of rows affected.
        """
        self.affected_rows += rows

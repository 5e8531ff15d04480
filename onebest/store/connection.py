"""SQLite connection setup and transaction handling shared by store and queue."""

import sqlite3
import time
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import structlog

from onebest.store.errors import StoreBusyError, StoreUnavailableError
from onebest.store.metrics import StoreMetrics, TransactionContext
from onebest.store.migrations import MigrationManager


logger = structlog.get_logger()

DEFAULT_BUSY_TIMEOUT_SECONDS = 5.0

_BUSY_MARKERS = ("database is locked", "database table is locked", "busy")


def format_timestamp(value: datetime) -> str:
    """Serialize a timestamp with fixed precision so text order is time order."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def open_connection(
    db_path: Path,
    busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    """Open a connection in autocommit mode and apply migrations.

    Creates the database file and parent directories if they don't exist.
    Transactions are opened explicitly with ``BEGIN IMMEDIATE`` so the
    write lock is taken before the current ordering is read.

    Args:
        db_path: Path to SQLite database file.
        busy_timeout_seconds: How long to wait for the write lock.

    Returns:
        Connected database handle.

    Raises:
        StoreUnavailableError: If the database cannot be opened.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        conn = sqlite3.connect(
            str(db_path),
            timeout=busy_timeout_seconds,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        MigrationManager(conn).apply_migrations()
    except sqlite3.OperationalError as e:
        raise to_store_error("connect", e) from e

    return conn


def to_store_error(
    operation: str, error: sqlite3.OperationalError
) -> StoreBusyError | StoreUnavailableError:
    """Classify an ``OperationalError`` as a transient store error.

    Args:
        operation: Operation that failed.
        error: The SQLite error.

    Returns:
        StoreBusyError for lock contention, StoreUnavailableError otherwise.
    """
    message = str(error)
    if any(marker in message.lower() for marker in _BUSY_MARKERS):
        return StoreBusyError(operation, message)
    return StoreUnavailableError(operation, message)


@contextmanager
def immediate_transaction(
    conn: sqlite3.Connection,
    operation: str,
    log: structlog.typing.FilteringBoundLogger,
    metrics: StoreMetrics,
) -> Generator[TransactionContext]:
    """Run a block inside ``BEGIN IMMEDIATE`` with timing and logging.

    Commits on success. Rolls back and re-raises on any exception;
    SQLite operational errors are converted to transient store errors.

    Args:
        conn: Autocommit-mode connection.
        operation: Name of the operation for logging.
        log: Bound logger of the owning component.
        metrics: Store metrics sink.

    Yields:
        Transaction context with timing information.
    """
    tx_id = str(uuid.uuid4())[:8]
    start_ns = time.perf_counter_ns()

    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as e:
        store_error = to_store_error(operation, e)
        if isinstance(store_error, StoreBusyError):
            metrics.record_busy()
        log.warning(
            "transaction_begin_failed",
            tx_id=tx_id,
            op=operation,
            error=str(e),
        )
        raise store_error from e

    ctx = TransactionContext(tx_id=tx_id, start_time_ns=start_ns, operation=operation)
    log.debug("transaction_started", tx_id=tx_id, op=operation)

    try:
        yield ctx
        conn.execute("COMMIT")
    except Exception as e:
        conn.execute("ROLLBACK")
        duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
        metrics.record_tx_failure()
        log.error(
            "transaction_failed",
            tx_id=tx_id,
            op=operation,
            duration_ms=round(duration_ms, 2),
            error_type=type(e).__name__,
        )
        if isinstance(e, sqlite3.OperationalError):
            raise to_store_error(operation, e) from e
        raise

    duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
    metrics.record_tx_duration(duration_ms)
    log.debug(
        "transaction_complete",
        tx_id=tx_id,
        op=operation,
        affected_rows=ctx.affected_rows,
        duration_ms=round(duration_ms, 2),
    )

"""SQLite-backed durable queue with visibility timeouts and a dead-letter queue.

Delivery is at least once. Receiving a message hides it for the
visibility window and hands out a fresh receipt handle; if the consumer
does not acknowledge within the window the message becomes visible again.
Each receive increments the delivery count. A message that has already
been delivered ``max_retries + 1`` times is moved to the dead-letter queue
on its next receive instead of being redelivered.
"""

import json
import sqlite3
import time
import uuid
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from onebest.events.errors import MalformedEnvelopeError
from onebest.events.models import EventEnvelope, EventStatus, parse_envelope
from onebest.queue.models import (
    DeadLetter,
    DeadLetterReason,
    DlqFilter,
    QueueDepth,
    QueueMessage,
    TrackingState,
    TrackingStatus,
)
from onebest.store.connection import (
    DEFAULT_BUSY_TIMEOUT_SECONDS,
    format_timestamp,
    immediate_transaction,
    open_connection,
    to_store_error,
)
from onebest.store.errors import ConnectionError as StoreConnectionError
from onebest.store.metrics import StoreMetrics, TransactionContext


logger = structlog.get_logger()

DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_BATCH_WAIT_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_DLQ_RETENTION_DAYS = 14


class DurableQueue:
    """A named queue stored in the same SQLite database as the rank store.

    Each instance owns one connection; give every worker thread its own
    instance.

    Example:
        >>> with DurableQueue(Path("state/onebest.sqlite")) as queue:
        ...     queue.send(envelope)
        ...     batch = queue.receive_batch(max_messages=10, wait_seconds=0)
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path | str,
        queue_name: str = "ranking-events",
        visibility_timeout_seconds: float = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        dlq_retention_days: int = DEFAULT_DLQ_RETENTION_DAYS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
        metrics: StoreMetrics | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            db_path: Path to SQLite database file.
            queue_name: Name of the queue.
            visibility_timeout_seconds: How long a received message stays hidden.
            max_retries: Redeliveries allowed before dead-lettering.
            dlq_retention_days: How long dead letters are kept.
            poll_interval_seconds: Sleep between polls while batching.
            clock: Source of "now" (defaults to UTC wall clock).
            sleep: Sleep function (injectable for tests).
            busy_timeout_seconds: How long to wait for the write lock.
            metrics: Optional store metrics instance.
        """
        self._db_path = Path(db_path) if isinstance(db_path, str) else db_path
        self._queue_name = queue_name
        self._visibility_timeout_seconds = visibility_timeout_seconds
        self._max_retries = max_retries
        self._dlq_retention_days = dlq_retention_days
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._busy_timeout_seconds = busy_timeout_seconds
        self._metrics = metrics or StoreMetrics.get_instance()
        self._conn: sqlite3.Connection | None = None
        self._log = logger.bind(component="queue", queue=queue_name)

    @property
    def name(self) -> str:
        """Queue name."""
        return self._queue_name

    @property
    def max_retries(self) -> int:
        """Redeliveries allowed before dead-lettering."""
        return self._max_retries

    def connect(self) -> None:
        """Open connection to database and apply migrations."""
        if self._conn is not None:
            return
        self._conn = open_connection(self._db_path, self._busy_timeout_seconds)
        self._log.debug("queue_connected", db_path=str(self._db_path))

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "DurableQueue":
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Context manager exit."""
        self.close()

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreConnectionError("Queue not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def _transaction(self, operation: str) -> Generator[TransactionContext]:
        conn = self._ensure_connected()
        with immediate_transaction(conn, operation, self._log, self._metrics) as ctx:
            yield ctx

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        conn = self._ensure_connected()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            raise to_store_error("queue_query", e) from e

    # ===== Producer side =====

    def send(self, envelope: EventEnvelope) -> str:
        """Enqueue an envelope.

        Returns:
            The new message ID.
        """
        return self.send_raw(envelope.to_json(), event_id=envelope.event_id)

    def send_raw(
        self,
        body: str,
        event_id: str | None = None,
        delay_seconds: float = 0.0,
    ) -> str:
        """Enqueue a serialized body as-is.

        Args:
            body: Message body (normally an envelope's JSON).
            event_id: Event ID for tracking lookups.
            delay_seconds: Initial invisibility.

        Returns:
            The new message ID.
        """
        message_id = str(uuid.uuid4())
        now = self._clock()
        with self._transaction("send"):
            self._insert(message_id, body, event_id, now, delay_seconds)

        self._log.debug("message_enqueued", message_id=message_id, event_id=event_id)
        return message_id

    def _insert(
        self,
        message_id: str,
        body: str,
        event_id: str | None,
        now: datetime,
        delay_seconds: float = 0.0,
    ) -> None:
        self._ensure_connected().execute(
            """
            INSERT INTO queue_messages (
                message_id, queue_name, event_id, body, delivery_count,
                receipt_handle, visible_at, enqueued_at
            ) VALUES (?, ?, ?, ?, 0, NULL, ?, ?)
            """,
            (
                message_id,
                self._queue_name,
                event_id,
                body,
                now.timestamp() + delay_seconds,
                format_timestamp(now),
            ),
        )

    # ===== Consumer side =====

    def receive_batch(
        self,
        max_messages: int = DEFAULT_BATCH_SIZE,
        wait_seconds: float = DEFAULT_MAX_BATCH_WAIT_SECONDS,
        should_stop: Callable[[], bool] | None = None,
    ) -> list[QueueMessage]:
        """Receive up to ``max_messages`` messages.

        Waits until a full batch is visible or ``wait_seconds`` elapse,
        whichever comes first, then claims what is visible. Messages over
        the retry limit are moved to the dead-letter queue instead of
        being returned.

        Args:
            max_messages: Largest batch to return.
            wait_seconds: Longest time to wait for a full batch.
            should_stop: Returns True to cut the wait short.

        Returns:
            Received messages, each with a fresh receipt handle.
        """
        if max_messages < 1:
            msg = f"max_messages must be >= 1, got {max_messages}"
            raise ValueError(msg)

        deadline = time.monotonic() + wait_seconds
        while True:
            visible = self._count_visible()
            stopping = should_stop is not None and should_stop()
            if visible >= max_messages or time.monotonic() >= deadline or stopping:
                return self._claim(max_messages)
            self._sleep(self._poll_interval_seconds)

    def _count_visible(self) -> int:
        rows = self._query(
            """
            SELECT COUNT(*) FROM queue_messages
            WHERE queue_name = ? AND visible_at <= ?
            """,
            (self._queue_name, self._clock().timestamp()),
        )
        return rows[0][0]

    def _claim(self, max_messages: int) -> list[QueueMessage]:
        now = self._clock()
        claimed: list[QueueMessage] = []

        with self._transaction("receive") as ctx:
            conn = self._ensure_connected()
            rows = conn.execute(
                """
                SELECT * FROM queue_messages
                WHERE queue_name = ? AND visible_at <= ?
                ORDER BY visible_at, enqueued_at
                LIMIT ?
                """,
                (self._queue_name, now.timestamp(), max_messages),
            ).fetchall()

            for row in rows:
                if row["delivery_count"] > self._max_retries:
                    self._move_to_dlq(
                        row,
                        reason=DeadLetterReason.MAX_RETRIES_EXCEEDED,
                        retry_count=row["delivery_count"] - 1,
                        error_class=None,
                        error_message=(
                            f"Delivered {row['delivery_count']} times "
                            f"(max retries {self._max_retries})"
                        ),
                        now=now,
                    )
                    continue

                delivery_count = row["delivery_count"] + 1
                receipt_handle = str(uuid.uuid4())
                visible_at = now + timedelta(seconds=self._visibility_timeout_seconds)
                body = _with_retry_count(row["body"], delivery_count - 1)
                conn.execute(
                    """
                    UPDATE queue_messages
                    SET delivery_count = ?, receipt_handle = ?, visible_at = ?, body = ?
                    WHERE message_id = ?
                    """,
                    (
                        delivery_count,
                        receipt_handle,
                        visible_at.timestamp(),
                        body,
                        row["message_id"],
                    ),
                )
                claimed.append(
                    QueueMessage(
                        message_id=row["message_id"],
                        queue_name=row["queue_name"],
                        event_id=row["event_id"],
                        body=body,
                        delivery_count=delivery_count,
                        receipt_handle=receipt_handle,
                        visible_at=visible_at,
                        enqueued_at=datetime.fromisoformat(row["enqueued_at"]),
                    )
                )
            ctx.add_affected_rows(len(rows))

        if claimed:
            self._log.debug("messages_received", count=len(claimed))
        return claimed

    def ack(self, receipt_handle: str) -> bool:
        """Acknowledge a delivery, removing the message.

        Returns:
            False if the handle is stale (the message was redelivered or
            already removed).
        """
        with self._transaction("ack"):
            cursor = self._ensure_connected().execute(
                "DELETE FROM queue_messages WHERE receipt_handle = ?",
                (receipt_handle,),
            )
            removed = cursor.rowcount > 0

        if not removed:
            self._log.warning("stale_receipt_handle", op="ack")
        return removed

    def dead_letter(
        self,
        message: QueueMessage,
        reason: DeadLetterReason,
        error_class: str | None = None,
        error_message: str | None = None,
    ) -> DeadLetter | None:
        """Move a received message to the dead-letter queue.

        Returns:
            The dead letter, or None if the receipt handle is stale.
        """
        now = self._clock()
        with self._transaction("dead_letter"):
            rows = self._ensure_connected().execute(
                """
                SELECT * FROM queue_messages
                WHERE message_id = ? AND receipt_handle IS ?
                """,
                (message.message_id, message.receipt_handle),
            ).fetchall()
            if not rows:
                dead = None
            else:
                dead = self._move_to_dlq(
                    rows[0],
                    reason=reason,
                    retry_count=message.retry_count,
                    error_class=error_class,
                    error_message=error_message,
                    now=now,
                )

        if dead is None:
            self._log.warning(
                "stale_receipt_handle",
                op="dead_letter",
                message_id=message.message_id,
            )
        return dead

    def _move_to_dlq(  # noqa: PLR0913
        self,
        row: sqlite3.Row,
        reason: DeadLetterReason,
        retry_count: int,
        error_class: str | None,
        error_message: str | None,
        now: datetime,
    ) -> DeadLetter:
        """Insert a dead letter and delete the queue row. Needs a transaction."""
        body = row["body"]
        fields = _peek_fields(body)
        try:
            envelope = parse_envelope(body)
        except MalformedEnvelopeError:
            envelope = None
        if envelope is not None:
            body = (
                envelope.with_retry_count(retry_count)
                .with_status(EventStatus.DEAD_LETTERED)
                .to_json()
            )

        dead = DeadLetter(
            message_id=row["message_id"],
            queue_name=row["queue_name"],
            event_id=row["event_id"] or fields.get("eventId"),
            body=body,
            event_type=fields.get("eventType"),
            source=fields.get("source"),
            user_id=fields.get("userId"),
            retry_count=retry_count,
            reason=reason,
            error_class=error_class,
            error_message=error_message,
            dead_lettered_at=now,
        )
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT OR REPLACE INTO dead_letters (
                message_id, queue_name, event_id, body, event_type, source,
                user_id, retry_count, reason, error_class, error_message,
                dead_lettered_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                dead.message_id,
                dead.queue_name,
                dead.event_id,
                dead.body,
                dead.event_type,
                dead.source,
                dead.user_id,
                dead.retry_count,
                dead.reason.value,
                dead.error_class,
                dead.error_message,
                format_timestamp(dead.dead_lettered_at),
            ),
        )
        conn.execute(
            "DELETE FROM queue_messages WHERE message_id = ?", (dead.message_id,)
        )
        self._log.warning(
            "message_dead_lettered",
            message_id=dead.message_id,
            event_id=dead.event_id,
            reason=reason.value,
            retry_count=retry_count,
            error_class=error_class,
        )
        return dead

    # ===== Dead-letter queue =====

    def list_dead_letters(self, dlq_filter: DlqFilter | None = None) -> list[DeadLetter]:
        """List dead letters of this queue, newest first."""
        dlq_filter = dlq_filter or DlqFilter()
        clauses = ["queue_name = ?"]
        params: list[Any] = [self._queue_name]
        if dlq_filter.source is not None:
            clauses.append("source = ?")
            params.append(dlq_filter.source)
        if dlq_filter.event_type is not None:
            clauses.append("event_type = ?")
            params.append(dlq_filter.event_type)
        if dlq_filter.reason is not None:
            clauses.append("reason = ?")
            params.append(dlq_filter.reason.value)
        if dlq_filter.since is not None:
            clauses.append("dead_lettered_at >= ?")
            params.append(format_timestamp(dlq_filter.since))
        if dlq_filter.until is not None:
            clauses.append("dead_lettered_at < ?")
            params.append(format_timestamp(dlq_filter.until))
        params.append(dlq_filter.limit)

        rows = self._query(
            f"""
            SELECT * FROM dead_letters
            WHERE {" AND ".join(clauses)}
            ORDER BY dead_lettered_at DESC
            LIMIT ?
            """,  # noqa: S608
            tuple(params),
        )
        return [_row_to_dead_letter(row) for row in rows]

    def get_dead_letter(self, message_id: str) -> DeadLetter | None:
        """Get a dead letter by message ID."""
        rows = self._query(
            "SELECT * FROM dead_letters WHERE message_id = ? AND queue_name = ?",
            (message_id, self._queue_name),
        )
        return _row_to_dead_letter(rows[0]) if rows else None

    def requeue_dead_letter(self, message_id: str, body: str) -> str | None:
        """Move a dead letter back onto the queue with a fresh delivery count.

        Args:
            message_id: Dead letter to requeue.
            body: Body to enqueue (the original or a corrected envelope).

        Returns:
            The new queue message ID, or None if the dead letter is gone.
        """
        now = self._clock()
        new_message_id = str(uuid.uuid4())
        with self._transaction("requeue_dead_letter"):
            conn = self._ensure_connected()
            rows = conn.execute(
                "SELECT event_id FROM dead_letters WHERE message_id = ? AND queue_name = ?",
                (message_id, self._queue_name),
            ).fetchall()
            if not rows:
                return None
            event_id = _peek_fields(body).get("eventId") or rows[0]["event_id"]
            conn.execute("DELETE FROM dead_letters WHERE message_id = ?", (message_id,))
            self._insert(new_message_id, body, event_id, now)

        self._log.info(
            "dead_letter_requeued",
            message_id=message_id,
            new_message_id=new_message_id,
        )
        return new_message_id

    def delete_dead_letter(self, message_id: str) -> bool:
        """Delete a dead letter without replaying it."""
        with self._transaction("delete_dead_letter"):
            cursor = self._ensure_connected().execute(
                "DELETE FROM dead_letters WHERE message_id = ? AND queue_name = ?",
                (message_id, self._queue_name),
            )
            return cursor.rowcount > 0

    def purge_expired_dead_letters(self) -> int:
        """Delete dead letters older than the retention period.

        Returns:
            Number of dead letters deleted.
        """
        cutoff = self._clock() - timedelta(days=self._dlq_retention_days)
        with self._transaction("purge_dead_letters"):
            cursor = self._ensure_connected().execute(
                "DELETE FROM dead_letters WHERE queue_name = ? AND dead_lettered_at < ?",
                (self._queue_name, format_timestamp(cutoff)),
            )
            purged = cursor.rowcount

        self._log.info(
            "dead_letters_purged",
            purged=purged,
            retention_days=self._dlq_retention_days,
        )
        return purged

    # ===== Inspection =====

    def depth(self) -> QueueDepth:
        """Count visible, in-flight, and dead-lettered messages."""
        now = self._clock().timestamp()
        row = self._query(
            """
            SELECT
                COALESCE(SUM(CASE WHEN visible_at <= ? THEN 1 ELSE 0 END), 0) AS visible,
                COALESCE(SUM(CASE WHEN visible_at > ? THEN 1 ELSE 0 END), 0) AS in_flight
            FROM queue_messages WHERE queue_name = ?
            """,
            (now, now, self._queue_name),
        )[0]
        dead = self._query(
            "SELECT COUNT(*) FROM dead_letters WHERE queue_name = ?",
            (self._queue_name,),
        )[0][0]
        return QueueDepth(visible=row["visible"], in_flight=row["in_flight"], dead_letters=dead)

    def tracking_status(self, event_id: str) -> TrackingStatus:
        """Report where an event is in the pipeline.

        Completion is read from the processed idempotency keys, which
        share the queue's database.
        """
        rows = self._query(
            """
            SELECT delivery_count, receipt_handle, visible_at FROM queue_messages
            WHERE event_id = ? AND queue_name = ?
            """,
            (event_id, self._queue_name),
        )
        if rows:
            row = rows[0]
            in_flight = (
                row["receipt_handle"] is not None
                and row["visible_at"] > self._clock().timestamp()
            )
            return TrackingStatus(
                event_id=event_id,
                state=TrackingState.IN_FLIGHT if in_flight else TrackingState.PENDING,
                delivery_count=row["delivery_count"],
            )

        rows = self._query(
            """
            SELECT retry_count, reason, error_message FROM dead_letters
            WHERE event_id = ? AND queue_name = ?
            """,
            (event_id, self._queue_name),
        )
        if rows:
            row = rows[0]
            return TrackingStatus(
                event_id=event_id,
                state=TrackingState.DEAD_LETTERED,
                delivery_count=row["retry_count"] + 1,
                reason=DeadLetterReason(row["reason"]),
                error_message=row["error_message"],
            )

        rows = self._query(
            "SELECT 1 FROM processed_keys WHERE event_id = ?", (event_id,)
        )
        state = TrackingState.COMPLETED if rows else TrackingState.UNKNOWN
        return TrackingStatus(event_id=event_id, state=state)


def _peek_fields(body: str) -> dict[str, str]:
    """Best-effort read of routing fields from a possibly malformed body."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {
        key: data[key]
        for key in ("eventId", "eventType", "source", "userId")
        if isinstance(data.get(key), str)
    }


def _with_retry_count(body: str, retry_count: int) -> str:
    """Stamp ``metadata.retryCount`` into a well-formed envelope body."""
    try:
        envelope = parse_envelope(body)
    except MalformedEnvelopeError:
        return body
    return envelope.with_retry_count(retry_count).to_json()


def _row_to_dead_letter(row: sqlite3.Row) -> DeadLetter:
    return DeadLetter(
        message_id=row["message_id"],
        queue_name=row["queue_name"],
        event_id=row["event_id"],
        body=row["body"],
        event_type=row["event_type"],
        source=row["source"],
        user_id=row["user_id"],
        retry_count=row["retry_count"],
        reason=DeadLetterReason(row["reason"]),
        error_class=row["error_class"],
        error_message=row["error_message"],
        dead_lettered_at=datetime.fromisoformat(row["dead_lettered_at"]),
    )

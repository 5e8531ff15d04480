"""SQLite rank store implementation."""

import json
import sqlite3
import uuid
from collections.abc import Callable, Generator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import structlog

from onebest.store.connection import (
    DEFAULT_BUSY_TIMEOUT_SECONDS,
    format_timestamp as _ts,
    immediate_transaction,
    open_connection,
    to_store_error,
)
from onebest.store.errors import ConnectionError as StoreConnectionError
from onebest.store.metrics import StoreMetrics, TransactionContext
from onebest.store.migrations import MigrationManager
from onebest.store.models import (
    DishRanking,
    DishStats,
    ProcessedKey,
    RankHistoryEntry,
    TasteStatus,
)


logger = structlog.get_logger()


class RankStore:
    """SQLite store for dish rankings, rank history, and processed keys.

    Every mutation goes through :meth:`transaction`, which takes the
    database write lock up front. That lock is the serialization point
    between competing workers: an ordering is read, recomputed and written
    back without another writer interleaving.

    Read helpers may also be called inside a transaction to see the
    locked state.
    """

    def __init__(
        self,
        db_path: Path | str,
        clock: Callable[[], datetime] | None = None,
        busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
        metrics: StoreMetrics | None = None,
    ) -> None:
        """Initialize the rank store.

        Args:
            db_path: Path to SQLite database file.
            clock: Source of "now" for timestamps (defaults to UTC wall clock).
            busy_timeout_seconds: How long to wait for the write lock.
            metrics: Optional metrics instance.
        """
        self._db_path = Path(db_path) if isinstance(db_path, str) else db_path
        self._clock = clock or (lambda: datetime.now(UTC))
        self._busy_timeout_seconds = busy_timeout_seconds
        self._conn: sqlite3.Connection | None = None
        self._metrics = metrics or StoreMetrics.get_instance()
        self._log = logger.bind(component="store", db_path=str(self._db_path))

    @property
    def db_path(self) -> Path:
        """Get the database path."""
        return self._db_path

    @property
    def is_connected(self) -> bool:
        """Check if connected to database."""
        return self._conn is not None

    def now(self) -> datetime:
        """Current time according to the store clock."""
        return self._clock()

    def connect(self) -> None:
        """Open connection to database and apply migrations."""
        if self._conn is not None:
            return

        self._conn = open_connection(self._db_path, self._busy_timeout_seconds)
        self._log.info("database_connected")

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._log.info("database_closed")

    def __enter__(self) -> "RankStore":
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
        """Ensure database is connected.

        Returns:
            The database connection.

        Raises:
            StoreConnectionError: If not connected.
        """
        if self._conn is None:
            raise StoreConnectionError("Database not connected. Call connect() first.")
        return self._conn

    def get_schema_version(self) -> int:
        """Get the applied schema version."""
        return MigrationManager(self._ensure_connected()).get_current_version()

    @contextmanager
    def transaction(self, operation: str) -> Generator[TransactionContext]:
        """Open a write transaction.

        Args:
            operation: Name of the operation for logging.

        Yields:
            Transaction context with timing information.

        Raises:
            StoreBusyError: If the write lock could not be acquired.
            StoreUnavailableError: If the database failed mid-transaction.
        """
        conn = self._ensure_connected()
        with immediate_transaction(conn, operation, self._log, self._metrics) as ctx:
            yield ctx

    def _query(self, sql: str, params: tuple[object, ...] = ()) -> list[sqlite3.Row]:
        conn = self._ensure_connected()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            raise to_store_error("query", e) from e

    # ===== Rankings =====

    def get_ranking(self, ranking_id: str) -> DishRanking | None:
        """Get a ranking by ID.

        Args:
            ranking_id: The ranking ID to look up.

        Returns:
            The ranking, or None if not found.
        """
        rows = self._query(
            "SELECT * FROM dish_rankings WHERE ranking_id = ?", (ranking_id,)
        )
        return self._row_to_ranking(rows[0]) if rows else None

    def find_ranking_by_dish(
        self, user_id: str, dish_type: str, dish_id: str
    ) -> DishRanking | None:
        """Find the ranking a user holds for a dish within a dish type."""
        rows = self._query(
            """
            SELECT * FROM dish_rankings
            WHERE user_id = ? AND dish_type = ? AND dish_id = ?
            """,
            (user_id, dish_type, dish_id),
        )
        return self._row_to_ranking(rows[0]) if rows else None

    def list_scope(self, user_id: str, dish_type: str) -> list[DishRanking]:
        """Get every ranking in a ``(user_id, dish_type)`` scope.

        Returns:
            Rankings ordered by rank (unranked last), then most recently
            updated first.
        """
        rows = self._query(
            """
            SELECT * FROM dish_rankings
            WHERE user_id = ? AND dish_type = ?
            ORDER BY rank IS NULL, rank ASC, updated_at DESC
            """,
            (user_id, dish_type),
        )
        return [self._row_to_ranking(row) for row in rows]

    def insert_ranking(self, ranking: DishRanking) -> None:
        """Insert a new ranking row.

        Must be called inside :meth:`transaction`.
        """
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO dish_rankings (
                ranking_id, user_id, dish_id, dish_type, restaurant_id,
                rank, taste_status, notes, photo_refs, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                ranking.ranking_id,
                ranking.user_id,
                ranking.dish_id,
                ranking.dish_type,
                ranking.restaurant_id,
                ranking.rank,
                ranking.taste_status.value if ranking.taste_status else None,
                ranking.notes,
                json.dumps(list(ranking.photo_refs)),
                _ts(ranking.created_at),
                _ts(ranking.updated_at),
            ),
        )
        self._metrics.record_created()

    def write_ranks(self, ranks: Mapping[str, int | None], now: datetime) -> int:
        """Rewrite the rank of several rankings at once.

        Rows are first cleared and then assigned, so intermediate states
        never collide on the scope's unique rank index.

        Must be called inside :meth:`transaction`.

        Args:
            ranks: Mapping of ranking ID to its new rank.
            now: Timestamp for ``updated_at``.

        Returns:
            Number of rows rewritten.
        """
        if not ranks:
            return 0

        conn = self._ensure_connected()
        conn.executemany(
            "UPDATE dish_rankings SET rank = NULL WHERE ranking_id = ?",
            [(ranking_id,) for ranking_id in ranks],
        )
        conn.executemany(
            "UPDATE dish_rankings SET rank = ?, updated_at = ? WHERE ranking_id = ?",
            [(rank, _ts(now), ranking_id) for ranking_id, rank in ranks.items()],
        )
        self._metrics.record_rank_changes(len(ranks))
        return len(ranks)

    def set_taste_status(
        self, ranking_id: str, taste_status: TasteStatus | None, now: datetime
    ) -> None:
        """Set a ranking's taste status.

        Must be called inside :meth:`transaction`.
        """
        conn = self._ensure_connected()
        conn.execute(
            """
            UPDATE dish_rankings SET taste_status = ?, updated_at = ?
            WHERE ranking_id = ?
            """,
            (taste_status.value if taste_status else None, _ts(now), ranking_id),
        )

    def find_rankings(
        self,
        user_id: str,
        dish_type: str | None = None,
        restaurant_id: str | None = None,
    ) -> list[DishRanking]:
        """Get a user's rankings matching the given filters.

        Returns:
            Rankings ordered by dish type, then rank (unranked last).
        """
        where, params = _scope_filter(user_id, dish_type, restaurant_id)
        rows = self._query(
            f"""
            SELECT * FROM dish_rankings WHERE {where}
            ORDER BY dish_type, rank IS NULL, rank ASC, updated_at DESC
            """,  # noqa: S608
            params,
        )
        return [self._row_to_ranking(row) for row in rows]

    def delete_scope(
        self,
        user_id: str,
        dish_type: str | None = None,
        restaurant_id: str | None = None,
    ) -> int:
        """Delete all of a user's rankings matching the given filters.

        History rows are kept. Must be called inside :meth:`transaction`.

        Returns:
            Number of rankings deleted.
        """
        where, params = _scope_filter(user_id, dish_type, restaurant_id)
        conn = self._ensure_connected()
        cursor = conn.execute(
            f"DELETE FROM dish_rankings WHERE {where}",  # noqa: S608
            params,
        )
        self._metrics.record_deleted(cursor.rowcount)
        return cursor.rowcount

    def _row_to_ranking(self, row: sqlite3.Row) -> DishRanking:
        """Convert a database row to a DishRanking."""
        return DishRanking(
            ranking_id=row["ranking_id"],
            user_id=row["user_id"],
            dish_id=row["dish_id"],
            dish_type=row["dish_type"],
            restaurant_id=row["restaurant_id"],
            rank=row["rank"],
            taste_status=TasteStatus(row["taste_status"]) if row["taste_status"] else None,
            notes=row["notes"],
            photo_refs=tuple(json.loads(row["photo_refs"])),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ===== Rank History =====

    def append_history(  # noqa: PLR0913
        self,
        ranking_id: str,
        previous_rank: int | None,
        new_rank: int | None,
        changed_at: datetime,
        note: str = "",
        previous_taste_status: TasteStatus | None = None,
        new_taste_status: TasteStatus | None = None,
    ) -> RankHistoryEntry:
        """Append a history entry with the next sequence number.

        Must be called inside :meth:`transaction`.

        Returns:
            The stored entry.
        """
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT COALESCE(MAX(sequence), 0) FROM rank_history WHERE ranking_id = ?",
            (ranking_id,),
        ).fetchone()
        entry = RankHistoryEntry(
            ranking_id=ranking_id,
            sequence=row[0] + 1,
            previous_rank=previous_rank,
            new_rank=new_rank,
            previous_taste_status=previous_taste_status,
            new_taste_status=new_taste_status,
            changed_at=changed_at,
            note=note,
        )
        conn.execute(
            """
            INSERT INTO rank_history (
                ranking_id, sequence, previous_rank, new_rank,
                previous_taste_status, new_taste_status, changed_at, note
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.ranking_id,
                entry.sequence,
                entry.previous_rank,
                entry.new_rank,
                entry.previous_taste_status.value if entry.previous_taste_status else None,
                entry.new_taste_status.value if entry.new_taste_status else None,
                _ts(entry.changed_at),
                entry.note,
            ),
        )
        self._metrics.record_history_entry()
        return entry

    def get_history(self, ranking_id: str) -> list[RankHistoryEntry]:
        """Get a ranking's history, oldest first."""
        rows = self._query(
            "SELECT * FROM rank_history WHERE ranking_id = ? ORDER BY sequence",
            (ranking_id,),
        )
        return [
            RankHistoryEntry(
                ranking_id=row["ranking_id"],
                sequence=row["sequence"],
                previous_rank=row["previous_rank"],
                new_rank=row["new_rank"],
                previous_taste_status=(
                    TasteStatus(row["previous_taste_status"])
                    if row["previous_taste_status"]
                    else None
                ),
                new_taste_status=(
                    TasteStatus(row["new_taste_status"])
                    if row["new_taste_status"]
                    else None
                ),
                changed_at=datetime.fromisoformat(row["changed_at"]),
                note=row["note"],
            )
            for row in rows
        ]

    # ===== Idempotency Keys =====

    def is_processed(self, idempotency_key: str) -> bool:
        """Check whether an idempotency key has already been applied."""
        rows = self._query(
            "SELECT 1 FROM processed_keys WHERE idempotency_key = ?",
            (idempotency_key,),
        )
        return bool(rows)

    def record_processed(
        self, idempotency_key: str, event_id: str, event_type: str
    ) -> ProcessedKey:
        """Record an idempotency key as applied.

        Must be called inside the same :meth:`transaction` as the mutation
        it guards.
        """
        processed = ProcessedKey(
            idempotency_key=idempotency_key,
            event_id=event_id,
            event_type=event_type,
            processed_at=self.now(),
        )
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO processed_keys (
                idempotency_key, event_id, event_type, processed_at
            ) VALUES (?, ?, ?, ?)
            """,
            (
                processed.idempotency_key,
                processed.event_id,
                processed.event_type,
                _ts(processed.processed_at),
            ),
        )
        return processed

    def get_processed(self, idempotency_key: str) -> ProcessedKey | None:
        """Get the record for an applied idempotency key."""
        rows = self._query(
            "SELECT * FROM processed_keys WHERE idempotency_key = ?",
            (idempotency_key,),
        )
        if not rows:
            return None
        row = rows[0]
        return ProcessedKey(
            idempotency_key=row["idempotency_key"],
            event_id=row["event_id"],
            event_type=row["event_type"],
            processed_at=datetime.fromisoformat(row["processed_at"]),
        )

    # ===== Cross-user reads =====

    def top_ranked_for_dish(self, dish_id: str, limit: int) -> list[DishRanking]:
        """Get ranked entries for a dish across all users.

        Returns:
            Rankings ordered by rank ascending, then most recent first.
        """
        rows = self._query(
            """
            SELECT * FROM dish_rankings
            WHERE dish_id = ? AND rank IS NOT NULL
            ORDER BY rank ASC, updated_at DESC
            LIMIT ?
            """,
            (dish_id, limit),
        )
        return [self._row_to_ranking(row) for row in rows]

    def dish_stats(self, dish_id: str) -> DishStats:
        """Aggregate ranking statistics for a dish across all users."""
        totals = self._query(
            """
            SELECT COUNT(*) AS total_rankings, AVG(rank) AS average_rank
            FROM dish_rankings WHERE dish_id = ?
            """,
            (dish_id,),
        )[0]
        rank_rows = self._query(
            """
            SELECT rank, COUNT(*) AS n FROM dish_rankings
            WHERE dish_id = ? AND rank IS NOT NULL
            GROUP BY rank ORDER BY rank
            """,
            (dish_id,),
        )
        status_rows = self._query(
            """
            SELECT taste_status, COUNT(*) AS n FROM dish_rankings
            WHERE dish_id = ? AND taste_status IS NOT NULL
            GROUP BY taste_status
            """,
            (dish_id,),
        )
        return DishStats(
            dish_id=dish_id,
            total_rankings=totals["total_rankings"],
            average_rank=totals["average_rank"],
            rank_counts={row["rank"]: row["n"] for row in rank_rows},
            taste_status_counts={
                TasteStatus(row["taste_status"]): row["n"] for row in status_rows
            },
        )


def new_ranking_id() -> str:
    """Generate an opaque ranking identifier."""
    return str(uuid.uuid4())


def _scope_filter(
    user_id: str,
    dish_type: str | None,
    restaurant_id: str | None,
) -> tuple[str, tuple[str, ...]]:
    """Build the WHERE clause selecting a user's rankings by optional filters."""
    clauses = ["user_id = ?"]
    params = [user_id]
    if dish_type is not None:
        clauses.append("dish_type = ?")
        params.append(dish_type)
    if restaurant_id is not None:
        clauses.append("restaurant_id = ?")
        params.append(restaurant_id)
    return " AND ".join(clauses), tuple(params)

"""SQLite schema migrations shared by the rank store and the queue."""

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from onebest.store.errors import MigrationError


logger = structlog.get_logger()

# Current schema version
CURRENT_VERSION = 3


@dataclass(frozen=True)
class Migration:
    """A database migration.

    Attributes:
        version: Target version after applying this migration.
        description: Human-readable description.
        up_sql: SQL to apply the migration.
        down_sql: SQL to rollback the migration.
    """

    version: int
    description: str
    up_sql: str
    down_sql: str


MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        description="Rankings, rank history, and processed idempotency keys",
        up_sql="""
CREATE TABLE IF NOT EXISTS dish_rankings (
    ranking_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    dish_id TEXT NOT NULL,
    dish_type TEXT NOT NULL,
    restaurant_id TEXT NOT NULL,
    rank INTEGER CHECK (rank IS NULL OR rank >= 1),
    taste_status TEXT,
    notes TEXT NOT NULL DEFAULT '',
    photo_refs TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, dish_type, dish_id)
);
CREATE INDEX IF NOT EXISTS idx_rankings_scope ON dish_rankings(user_id, dish_type);
CREATE UNIQUE INDEX IF NOT EXISTS ux_rankings_scope_rank
    ON dish_rankings(user_id, dish_type, rank) WHERE rank IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_rankings_dish ON dish_rankings(dish_id, rank);
CREATE INDEX IF NOT EXISTS idx_rankings_restaurant
    ON dish_rankings(user_id, restaurant_id);

CREATE TABLE IF NOT EXISTS rank_history (
    ranking_id TEXT NOT NULL
        REFERENCES dish_rankings(ranking_id) ON DELETE CASCADE,
    sequence INTEGER NOT NULL,
    previous_rank INTEGER,
    new_rank INTEGER,
    previous_taste_status TEXT,
    new_taste_status TEXT,
    changed_at TEXT NOT NULL,
    note TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (ranking_id, sequence)
);

CREATE TABLE IF NOT EXISTS processed_keys (
    idempotency_key TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    processed_at TEXT NOT NULL
);
""",
        down_sql="""
DROP TABLE IF EXISTS processed_keys;
DROP TABLE IF EXISTS rank_history;
DROP INDEX IF EXISTS idx_rankings_restaurant;
DROP INDEX IF EXISTS idx_rankings_dish;
DROP INDEX IF EXISTS ux_rankings_scope_rank;
DROP INDEX IF EXISTS idx_rankings_scope;
DROP TABLE IF EXISTS dish_rankings;
""",
    ),
    Migration(
        version=2,
        description="Durable queue messages and dead letters",
        up_sql="""
CREATE TABLE IF NOT EXISTS queue_messages (
    message_id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    event_id TEXT,
    body TEXT NOT NULL,
    delivery_count INTEGER NOT NULL DEFAULT 0,
    receipt_handle TEXT,
    visible_at REAL NOT NULL,
    enqueued_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queue_visible
    ON queue_messages(queue_name, visible_at, enqueued_at);
CREATE INDEX IF NOT EXISTS idx_queue_event ON queue_messages(event_id);

CREATE TABLE IF NOT EXISTS dead_letters (
    message_id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    event_id TEXT,
    body TEXT NOT NULL,
    event_type TEXT,
    source TEXT,
    user_id TEXT,
    retry_count INTEGER NOT NULL,
    reason TEXT NOT NULL,
    error_class TEXT,
    error_message TEXT,
    dead_lettered_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_dead_letters_at ON dead_letters(dead_lettered_at);
CREATE INDEX IF NOT EXISTS idx_dead_letters_event ON dead_letters(event_id);
""",
        down_sql="""
DROP INDEX IF EXISTS idx_dead_letters_event;
DROP INDEX IF EXISTS idx_dead_letters_at;
DROP TABLE IF EXISTS dead_letters;
DROP INDEX IF EXISTS idx_queue_event;
DROP INDEX IF EXISTS idx_queue_visible;
DROP TABLE IF EXISTS queue_messages;
""",
    ),
    Migration(
        version=3,
        description="Keep rank history after its ranking is deleted",
        up_sql="""
CREATE TABLE rank_history_v3 (
    ranking_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    previous_rank INTEGER,
    new_rank INTEGER,
    previous_taste_status TEXT,
    new_taste_status TEXT,
    changed_at TEXT NOT NULL,
    note TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (ranking_id, sequence)
);
INSERT INTO rank_history_v3 SELECT
    ranking_id, sequence, previous_rank, new_rank,
    previous_taste_status, new_taste_status, changed_at, note
FROM rank_history;
DROP TABLE rank_history;
ALTER TABLE rank_history_v3 RENAME TO rank_history;
""",
        down_sql="""
DELETE FROM rank_history
WHERE ranking_id NOT IN (SELECT ranking_id FROM dish_rankings);
CREATE TABLE rank_history_v2 (
    ranking_id TEXT NOT NULL
        REFERENCES dish_rankings(ranking_id) ON DELETE CASCADE,
    sequence INTEGER NOT NULL,
    previous_rank INTEGER,
    new_rank INTEGER,
    previous_taste_status TEXT,
    new_taste_status TEXT,
    changed_at TEXT NOT NULL,
    note TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (ranking_id, sequence)
);
INSERT INTO rank_history_v2 SELECT
    ranking_id, sequence, previous_rank, new_rank,
    previous_taste_status, new_taste_status, changed_at, note
FROM rank_history;
DROP TABLE rank_history;
ALTER TABLE rank_history_v2 RENAME TO rank_history;
""",
    ),
]


def get_migrations_to_apply(current_version: int) -> list[Migration]:
    """Get migrations that need to be applied.

    Args:
        current_version: The current schema version.

    Returns:
        List of migrations to apply in order.
    """
    return [m for m in MIGRATIONS if m.version > current_version]


def split_statements(script: str) -> list[str]:
    """Split a migration script into individual statements.

    ``executescript`` commits any open transaction first, so scripts are
    executed statement by statement inside the migration transaction.

    Args:
        script: SQL script with ``;``-terminated statements.

    Returns:
        Non-empty statements in order.
    """
    return [s.strip() for s in script.split(";") if s.strip()]


class MigrationManager:
    """Manages SQLite schema migrations.

    The connection must be in autocommit mode (``isolation_level=None``);
    pending migrations are applied under ``BEGIN IMMEDIATE`` so several
    processes opening the same database at once apply each version once.
    """

    VERSION_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL,
    description TEXT
);
"""

    def __init__(self, connection: sqlite3.Connection) -> None:
        """Initialize the migration manager.

        Args:
            connection: SQLite connection to manage.
        """
        self._conn = connection
        self._log = logger.bind(component="store", operation="migration")

    def ensure_version_table(self) -> None:
        """Ensure the schema_version table exists."""
        self._conn.execute(self.VERSION_TABLE_SQL)

    def get_current_version(self) -> int:
        """Get the current schema version.

        Returns:
            Current version number, or 0 if no migrations applied.
        """
        self.ensure_version_table()
        cursor = self._conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def apply_migrations(self) -> list[int]:
        """Apply all pending migrations.

        Returns:
            List of version numbers that were applied.
        """
        self.ensure_version_table()
        self._conn.execute("BEGIN IMMEDIATE")
        applied: list[int] = []
        version = 0

        try:
            current = self.get_current_version()
            pending = get_migrations_to_apply(current)

            for migration in pending:
                version = migration.version
                self._log.info(
                    "applying_migration",
                    version=migration.version,
                    description=migration.description,
                )
                for statement in split_statements(migration.up_sql):
                    self._conn.execute(statement)
                self._conn.execute(
                    """
                    INSERT INTO schema_version (version, applied_at, description)
                    VALUES (?, ?, ?)
                    """,
                    (
                        migration.version,
                        datetime.now(UTC).isoformat(),
                        migration.description,
                    ),
                )
                applied.append(migration.version)

            self._conn.execute("COMMIT")

        except Exception as e:
            self._log.error(
                "migration_failed",
                version=version,
                error=str(e),
            )
            self._conn.execute("ROLLBACK")
            raise MigrationError(version, str(e)) from e

        if applied:
            self._log.info("migrations_applied", versions=applied)
        else:
            self._log.debug("no_migrations_pending", current_version=current)

        return applied

    def rollback_to(self, target_version: int) -> list[int]:
        """Rollback to a specific version.

        Args:
            target_version: The version to rollback to.

        Returns:
            List of version numbers that were rolled back.

        Raises:
            ValueError: If target version is invalid.
        """
        if target_version < 0:
            msg = f"Invalid target version: {target_version}"
            raise ValueError(msg)

        self.ensure_version_table()
        self._conn.execute("BEGIN IMMEDIATE")
        rolled_back: list[int] = []

        try:
            current = self.get_current_version()
            for migration in reversed(MIGRATIONS):
                if migration.version > current or migration.version <= target_version:
                    continue

                self._log.info(
                    "rolling_back_migration",
                    version=migration.version,
                    description=migration.description,
                )
                for statement in split_statements(migration.down_sql):
                    self._conn.execute(statement)
                self._conn.execute(
                    "DELETE FROM schema_version WHERE version = ?",
                    (migration.version,),
                )
                rolled_back.append(migration.version)

            self._conn.execute("COMMIT")

        except Exception as e:
            self._log.error(
                "rollback_failed",
                rolled_back=rolled_back,
                error=str(e),
            )
            self._conn.execute("ROLLBACK")
            raise

        return rolled_back

    def get_applied_migrations(self) -> list[dict[str, str | int]]:
        """Get list of applied migrations.

        Returns:
            List of dicts with version, applied_at, and description.
        """
        self.ensure_version_table()
        cursor = self._conn.execute(
            """
            SELECT version, applied_at, description
            FROM schema_version
            ORDER BY version
            """
        )
        return [
            {
                "version": row[0],
                "applied_at": row[1],
                "description": row[2],
            }
            for row in cursor.fetchall()
        ]

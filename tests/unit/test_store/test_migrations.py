"""Unit tests for schema migrations."""

import sqlite3
from collections.abc import Generator

import pytest

from onebest.store.migrations import (
    CURRENT_VERSION,
    MIGRATIONS,
    MigrationManager,
    get_migrations_to_apply,
    split_statements,
)


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
    )
    return cursor.fetchone() is not None


@pytest.fixture
def temp_db() -> Generator[sqlite3.Connection]:
    """Create an in-memory database in autocommit mode."""
    conn = sqlite3.connect(":memory:", isolation_level=None)
    yield conn
    conn.close()


class TestMigrationConstants:
    """Tests for migration constants."""

    @pytest.mark.unit
    def test_migrations_in_order(self) -> None:
        """Test migrations are in ascending version order."""
        versions = [m.version for m in MIGRATIONS]
        assert versions == sorted(versions)

    @pytest.mark.unit
    def test_migrations_have_up_and_down(self) -> None:
        """Test all migrations have up and down SQL."""
        for migration in MIGRATIONS:
            assert migration.up_sql.strip()
            assert migration.down_sql.strip()

    @pytest.mark.unit
    def test_current_version_matches_latest_migration(self) -> None:
        """Test current version matches the latest migration."""
        assert MIGRATIONS[-1].version == CURRENT_VERSION

    @pytest.mark.unit
    def test_pending_from_intermediate(self) -> None:
        """Test migrations from an intermediate version."""
        assert [m.version for m in get_migrations_to_apply(1)] == [2, 3]
        assert get_migrations_to_apply(CURRENT_VERSION) == []


class TestSplitStatements:
    """Tests for split_statements."""

    @pytest.mark.unit
    def test_drops_blank_fragments(self) -> None:
        """Test trailing semicolons and whitespace are ignored."""
        script = "CREATE TABLE a (x);\n\n  CREATE TABLE b (y);\n"

        assert split_statements(script) == ["CREATE TABLE a (x)", "CREATE TABLE b (y)"]


class TestMigrationManager:
    """Tests for MigrationManager."""

    @pytest.mark.unit
    def test_apply_migrations(self, temp_db: sqlite3.Connection) -> None:
        """Test applying all migrations creates every table."""
        manager = MigrationManager(temp_db)

        applied = manager.apply_migrations()

        assert applied == [m.version for m in MIGRATIONS]
        assert manager.get_current_version() == CURRENT_VERSION
        for table in (
            "dish_rankings",
            "rank_history",
            "processed_keys",
            "queue_messages",
            "dead_letters",
        ):
            assert _table_exists(temp_db, table)

    @pytest.mark.unit
    def test_apply_migrations_idempotent(self, temp_db: sqlite3.Connection) -> None:
        """Test applying migrations twice is idempotent."""
        manager = MigrationManager(temp_db)
        manager.apply_migrations()

        assert manager.apply_migrations() == []
        assert len(manager.get_applied_migrations()) == len(MIGRATIONS)

    @pytest.mark.unit
    def test_rank_unique_within_scope(self, temp_db: sqlite3.Connection) -> None:
        """Test the schema refuses two rankings at one rank in a scope."""
        MigrationManager(temp_db).apply_migrations()
        insert = """
            INSERT INTO dish_rankings (
                ranking_id, user_id, dish_id, dish_type, restaurant_id,
                rank, created_at, updated_at
            ) VALUES (?, 'u1', ?, 'ramen', 'r1', ?, 't', 't')
        """
        temp_db.execute(insert, ("rk-1", "d1", 1))
        temp_db.execute(insert, ("rk-2", "d2", None))
        temp_db.execute(insert, ("rk-3", "d3", None))

        with pytest.raises(sqlite3.IntegrityError):
            temp_db.execute(insert, ("rk-4", "d4", 1))

    @pytest.mark.unit
    def test_rollback_partial(self, temp_db: sqlite3.Connection) -> None:
        """Test rolling back to the ranking tables alone."""
        manager = MigrationManager(temp_db)
        manager.apply_migrations()

        assert manager.rollback_to(1) == [3, 2]
        assert manager.get_current_version() == 1
        assert not _table_exists(temp_db, "queue_messages")
        assert _table_exists(temp_db, "dish_rankings")
        assert _table_exists(temp_db, "rank_history")

    @pytest.mark.unit
    def test_rollback_invalid_version_raises(self, temp_db: sqlite3.Connection) -> None:
        """Test rollback to an invalid version raises."""
        manager = MigrationManager(temp_db)

        with pytest.raises(ValueError, match="Invalid target version"):
            manager.rollback_to(-1)

    @pytest.mark.unit
    def test_history_outlives_ranking(self, temp_db: sqlite3.Connection) -> None:
        """Test deleting a ranking leaves its history rows in place."""
        temp_db.execute("PRAGMA foreign_keys = ON")
        MigrationManager(temp_db).apply_migrations()
        temp_db.execute(
            """
            INSERT INTO dish_rankings (
                ranking_id, user_id, dish_id, dish_type, restaurant_id,
                rank, created_at, updated_at
            ) VALUES ('rk-1', 'u1', 'd1', 'ramen', 'r1', 1, 't', 't')
            """
        )
        temp_db.execute(
            """
            INSERT INTO rank_history (ranking_id, sequence, new_rank, changed_at)
            VALUES ('rk-1', 1, 1, 't')
            """
        )

        temp_db.execute("DELETE FROM dish_rankings WHERE ranking_id = 'rk-1'")

        count = temp_db.execute("SELECT COUNT(*) FROM rank_history").fetchone()[0]
        assert count == 1

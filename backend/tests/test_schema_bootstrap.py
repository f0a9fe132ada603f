"""Test automatic schema bootstrap / dev DB reset logic."""
import importlib
import os
import sqlite3
from pathlib import Path
from unittest import mock

import pytest

from backend.app import models  # noqa: F401  registers tables on Base
from backend.app.db import check_schema, ensure_schema, Base, REQUIRED_SCHEMA

# Migration module has a leading digit, so use importlib.
_migration_001 = importlib.import_module("backend.migrations.001_labeling_and_ledgers")


def _create_old_schema_db(path: Path):
    """Create a SQLite DB with the pre-labeling schema (no waiting flag,
    no vacation credit columns, no multiplier history)."""
    conn = sqlite3.connect(str(path))
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE raw_activity_events (
            id INTEGER PRIMARY KEY,
            user_id TEXT NOT NULL,
            content_key TEXT NOT NULL,
            activity_type TEXT NOT NULL,
            occurred_at BIGINT NOT NULL,
            source TEXT NOT NULL,
            url TEXT,
            received_at BIGINT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE streak_days (
            id INTEGER PRIMARY KEY,
            user_id TEXT NOT NULL,
            day_start BIGINT NOT NULL,
            tracked_duration_ms BIGINT NOT NULL,
            xp_gained INTEGER NOT NULL,
            credited BOOLEAN NOT NULL,
            streak_length INTEGER NOT NULL,
            last_event_at BIGINT
        )
    """)

    cursor.execute("""
        CREATE TABLE experience_ledger (
            id INTEGER PRIMARY KEY,
            user_id TEXT NOT NULL,
            target_language_profile_id INTEGER NOT NULL,
            activity_id INTEGER,
            base_experience INTEGER NOT NULL,
            delta_experience INTEGER NOT NULL,
            running_total_after INTEGER NOT NULL,
            occurred_at BIGINT NOT NULL,
            previous_level INTEGER NOT NULL,
            new_level INTEGER NOT NULL,
            levels_gained INTEGER NOT NULL,
            remainder_towards_next_level INTEGER NOT NULL,
            next_level_cost INTEGER NOT NULL,
            note TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE activities (
            id INTEGER PRIMARY KEY,
            user_id TEXT NOT NULL,
            content_key TEXT,
            state TEXT NOT NULL
        )
    """)

    # Insert rows so we know the DB has data
    cursor.execute(
        "INSERT INTO streak_days "
        "(user_id, day_start, tracked_duration_ms, xp_gained, credited, streak_length) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        ("learner-old", 1_700_006_400_000, 1_800_000, 52, 1, 4),
    )
    cursor.execute(
        "INSERT INTO raw_activity_events "
        "(user_id, content_key, activity_type, occurred_at, source, received_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        ("learner-old", "youtube:abc", "heartbeat", 1_700_006_400_000, "youtube", 1_700_006_400_000),
    )

    conn.commit()
    conn.close()


class TestCheckSchema:
    """Tests for the pure check_schema() function."""

    def test_detects_missing_columns_on_old_db(self, tmp_path):
        db_path = tmp_path / "old.db"
        _create_old_schema_db(db_path)

        missing = check_schema(db_path)

        assert "is_waiting_on_labeling" in missing["raw_activity_events"]
        assert "credit_kind" in missing["streak_days"]
        assert "vacation_applied_at" in missing["streak_days"]
        assert "multipliers_json" in missing["experience_ledger"]

        # vacation_ledger table doesn't exist at all
        assert "vacation_ledger" in missing

    def test_returns_empty_for_up_to_date_db(self, tmp_path):
        """A freshly-created DB (via create_all) should pass the check."""
        db_path = tmp_path / "fresh.db"
        from sqlalchemy import create_engine as ce
        fresh_engine = ce(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=fresh_engine)
        fresh_engine.dispose()

        missing = check_schema(db_path)
        assert missing == {}

    def test_detects_missing_table(self, tmp_path):
        """A DB with no tables at all should report everything missing."""
        db_path = tmp_path / "empty.db"
        conn = sqlite3.connect(str(db_path))
        conn.close()

        missing = check_schema(db_path)
        for table in REQUIRED_SCHEMA:
            assert table in missing

    def test_detects_missing_in_progress_index(self, tmp_path):
        """An activities table built before the index existed is flagged."""
        db_path = tmp_path / "old.db"
        _create_old_schema_db(db_path)

        missing = check_schema(db_path)

        assert missing["activities"] == ["index:uq_activities_user_content_in_progress"]


class TestEnsureSchema:
    """Tests for the ensure_schema() startup logic."""

    def test_dev_reset_backs_up_and_recreates(self, tmp_path):
        """ALLOW_DEV_DB_RESET=1 should back up the stale DB and create a
        fresh one that passes schema checks."""
        db_path = tmp_path / "progress.db"
        _create_old_schema_db(db_path)

        db_url = f"sqlite:///{db_path}"

        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", _make_engine(db_url)), \
             mock.patch.dict(os.environ, {"ALLOW_DEV_DB_RESET": "1"}):
            ensure_schema()

        # Old file should be renamed to .bak-*
        bak_files = list(tmp_path.glob("progress.db.bak-*"))
        assert len(bak_files) == 1

        # New file should exist and pass the schema check
        assert db_path.exists()
        assert check_schema(db_path) == {}

        # Backup should still have the old data
        conn = sqlite3.connect(str(bak_files[0]))
        cursor = conn.cursor()
        cursor.execute("SELECT user_id, streak_length FROM streak_days")
        rows = cursor.fetchall()
        conn.close()
        assert ("learner-old", 4) in rows

    def test_no_reset_raises_clear_error(self, tmp_path):
        """Without ALLOW_DEV_DB_RESET, ensure_schema must raise RuntimeError
        listing the missing columns and the migration command."""
        db_path = tmp_path / "progress.db"
        _create_old_schema_db(db_path)

        db_url = f"sqlite:///{db_path}"

        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", _make_engine(db_url)), \
             mock.patch.dict(os.environ, {}, clear=False):
            # Make sure ALLOW_DEV_DB_RESET is NOT set
            os.environ.pop("ALLOW_DEV_DB_RESET", None)
            with pytest.raises(RuntimeError) as exc_info:
                ensure_schema()

        msg = str(exc_info.value)
        # Should mention the missing columns
        assert "is_waiting_on_labeling" in msg
        assert "multipliers_json" in msg
        # Should mention the migration command
        assert "001_labeling_and_ledgers" in msg

    def test_fresh_db_creates_cleanly(self, tmp_path):
        """If the DB file doesn't exist, ensure_schema creates it."""
        db_path = tmp_path / "progress.db"
        assert not db_path.exists()

        db_url = f"sqlite:///{db_path}"

        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", _make_engine(db_url)):
            ensure_schema()

        assert db_path.exists()
        assert check_schema(db_path) == {}

    def test_in_memory_always_works(self):
        """In-memory DBs (test path) should always succeed."""
        db_url = "sqlite:///:memory:"
        eng = _make_engine(db_url)

        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", eng):
            # Should not raise
            ensure_schema()

        eng.dispose()


class TestMigrationScript:
    """Tests for the 001_labeling_and_ledgers migration script."""

    def test_migration_adds_missing_columns(self, tmp_path):
        db_path = tmp_path / "progress.db"
        _create_old_schema_db(db_path)

        _migration_001.migrate(db_path)

        missing = check_schema(db_path)
        assert "raw_activity_events" not in missing
        assert "streak_days" not in missing
        assert "experience_ledger" not in missing

    def test_migration_is_idempotent(self, tmp_path):
        db_path = tmp_path / "progress.db"
        _create_old_schema_db(db_path)

        _migration_001.migrate(db_path)
        # Running again should not raise
        _migration_001.migrate(db_path)

        missing = check_schema(db_path)
        assert "streak_days" not in missing

    def test_migration_preserves_existing_data(self, tmp_path):
        db_path = tmp_path / "progress.db"
        _create_old_schema_db(db_path)

        _migration_001.migrate(db_path)

        conn = sqlite3.connect(str(db_path))
        cursor = conn.cursor()
        cursor.execute("SELECT user_id, credit_kind, streak_length FROM streak_days")
        days = cursor.fetchall()
        cursor.execute("SELECT user_id, is_waiting_on_labeling FROM raw_activity_events")
        events = cursor.fetchall()
        conn.close()

        # Days credited before the migration were activity credits
        assert ("learner-old", "activity", 4) in days
        assert ("learner-old", 0) in events

    def test_migration_creates_in_progress_index(self, tmp_path):
        db_path = tmp_path / "progress.db"
        _create_old_schema_db(db_path)

        _migration_001.migrate(db_path)

        conn = sqlite3.connect(str(db_path))
        cursor = conn.cursor()
        cursor.execute(
            "INSERT INTO activities (user_id, content_key, state) VALUES ('u', 'k', 'in-progress')"
        )
        with pytest.raises(sqlite3.IntegrityError):
            cursor.execute(
                "INSERT INTO activities (user_id, content_key, state) VALUES ('u', 'k', 'in-progress')"
            )
        # Completed rows for the same key are fine
        cursor.execute(
            "INSERT INTO activities (user_id, content_key, state) VALUES ('u', 'k', 'completed')"
        )
        conn.close()


def _make_engine(db_url: str):
    """Helper to create a disposable engine for testing."""
    from sqlalchemy import create_engine as ce
    return ce(db_url, connect_args={"check_same_thread": False})

"""Migration: Add labeling backlog flag and ledger detail columns.

Idempotent: safe to run multiple times.

Run with: python -m backend.migrations.001_labeling_and_ledgers
"""
import os
import sqlite3
import sys
from pathlib import Path

# Database path at repo root unless DATABASE_URL points at another file
REPO_ROOT = Path(__file__).resolve().parent.parent.parent
_url = os.getenv("DATABASE_URL", "")
DB_PATH = Path(_url.replace("sqlite:///", "", 1)) if _url.startswith("sqlite:///") else REPO_ROOT / "progress.db"

# (table, column, DDL type)
NEW_COLUMNS = [
    ("raw_activity_events", "is_waiting_on_labeling", "BOOLEAN NOT NULL DEFAULT 0"),
    ("streak_days", "credit_kind", "VARCHAR"),
    ("streak_days", "vacation_applied_at", "BIGINT"),
    ("experience_ledger", "multipliers_json", "TEXT"),
]


def column_exists(cursor: sqlite3.Cursor, table_name: str, column_name: str) -> bool:
    """Check if a column exists in a table."""
    cursor.execute(f"PRAGMA table_info({table_name})")
    columns = [row[1] for row in cursor.fetchall()]
    return column_name in columns


def table_exists(cursor: sqlite3.Cursor, table_name: str) -> bool:
    """Check if a table exists."""
    cursor.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cursor.fetchone() is not None


def index_exists(cursor: sqlite3.Cursor, index_name: str) -> bool:
    cursor.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name=?",
        (index_name,),
    )
    return cursor.fetchone() is not None


def migrate(db_path: Path | None = None):
    """Run the migration against the given DB file (defaults to DB_PATH)."""
    path = db_path or DB_PATH

    if not path.exists():
        print(f"Database not found at {path}")
        print("No migration needed, database will be created with the new schema on first run.")
        return

    conn = sqlite3.connect(str(path))
    cursor = conn.cursor()

    try:
        for table, column, ddl in NEW_COLUMNS:
            if not table_exists(cursor, table):
                print(f"Table {table} does not exist, will be created on app startup.")
                continue
            if column_exists(cursor, table, column):
                print(f"Column {column} already exists in {table}, skipping.")
                continue
            print(f"Adding {column} column to {table}...")
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            print("  Done.")

        # Backfill: every credited day before this migration was an activity credit
        if table_exists(cursor, "streak_days"):
            cursor.execute(
                "UPDATE streak_days SET credit_kind = 'activity' "
                "WHERE credited = 1 AND credit_kind IS NULL"
            )

        if table_exists(cursor, "activities"):
            if not index_exists(cursor, "uq_activities_user_content_in_progress"):
                print("Creating unique index uq_activities_user_content_in_progress...")
                cursor.execute(
                    "CREATE UNIQUE INDEX uq_activities_user_content_in_progress "
                    "ON activities (user_id, content_key) WHERE state = 'in-progress'"
                )
                print("  Done.")
            else:
                print("Index uq_activities_user_content_in_progress already exists, skipping.")

        conn.commit()
        print("\nMigration 001_labeling_and_ledgers completed successfully!")

    except Exception as e:
        conn.rollback()
        print(f"Migration failed: {e}")
        sys.exit(1)
    finally:
        conn.close()


if __name__ == "__main__":
    migrate()

"""Database engine, sessions and the startup schema guard."""
import logging
import os
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .settings import DATABASE_URL

logger = logging.getLogger(__name__)

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

MIGRATION_MODULE = "backend.migrations.001_labeling_and_ledgers"

# Columns added after the first release.  Tables missing entirely are
# reported too, but create_all can still build them from scratch.
REQUIRED_SCHEMA = {
    "raw_activity_events": [
        "user_id", "content_key", "activity_type", "occurred_at", "source",
        "is_waiting_on_labeling",
    ],
    "streak_days": [
        "user_id", "day_start", "tracked_duration_ms", "xp_gained", "credited",
        "credit_kind", "streak_length", "vacation_applied_at",
    ],
    "experience_ledger": [
        "user_id", "target_language_profile_id", "activity_id",
        "base_experience", "delta_experience", "running_total_after",
        "multipliers_json",
    ],
    "vacation_ledger": [
        "user_id", "occurred_at", "reason", "delta", "balance_after",
    ],
}

# Indexes that create_all will not add to a table that already exists.
REQUIRED_INDEXES = {
    "activities": ["uq_activities_user_content_in_progress"],
}


def _get_sqlite_path() -> Path | None:
    """Filesystem path of a sqlite:/// URL, or None for :memory: and
    non-SQLite engines."""
    if not DATABASE_URL.startswith("sqlite:///"):
        return None
    raw = DATABASE_URL.replace("sqlite:///", "", 1)
    if raw in (":memory:", ""):
        return None
    return Path(raw)


def _get_table_columns(cursor: sqlite3.Cursor, table: str) -> set[str]:
    cursor.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cursor.fetchall()}


def _get_index_names(cursor: sqlite3.Cursor, table: str) -> set[str]:
    cursor.execute("SELECT name FROM sqlite_master WHERE type='index' AND tbl_name=?", (table,))
    return {row[0] for row in cursor.fetchall()}


def check_schema(db_path: Path) -> dict[str, list[str]]:
    """Return ``{table: [missing columns or indexes]}``.  Empty means current.

    Index names are prefixed with ``index:`` so the startup error can tell
    them apart from columns.
    """
    missing: dict[str, list[str]] = {}

    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        existing_tables = {row[0] for row in cursor.fetchall()}

        for table, required_cols in REQUIRED_SCHEMA.items():
            if table not in existing_tables:
                missing[table] = list(required_cols)
                continue
            actual_cols = _get_table_columns(cursor, table)
            cols_missing = [c for c in required_cols if c not in actual_cols]
            if cols_missing:
                missing[table] = cols_missing

        for table, required_indexes in REQUIRED_INDEXES.items():
            if table not in existing_tables:
                continue
            actual_indexes = _get_index_names(cursor, table)
            for name in required_indexes:
                if name not in actual_indexes:
                    missing.setdefault(table, []).append(f"index:{name}")
    finally:
        conn.close()

    return missing


def _stale_schema_message(missing: dict[str, list[str]]) -> str:
    lines = ["Database schema is out of date.  Missing:"]
    for table, items in sorted(missing.items()):
        lines.append(f"  {table}: {', '.join(items)}")
    lines += [
        "",
        "To fix, run the idempotent migration:",
        f"  python -m {MIGRATION_MODULE}",
        "",
        "Or set ALLOW_DEV_DB_RESET=1 to auto-backup and recreate the DB.",
    ]
    return "\n".join(lines)


def ensure_schema():
    """Run at application startup.

    In-memory and non-SQLite databases (the test path) just get
    ``create_all``.  A SQLite file with a stale schema is either backed up
    and recreated (``ALLOW_DEV_DB_RESET=1``) or rejected with a RuntimeError
    that lists what is missing and the migration to run.
    """
    # Register every table on Base.metadata
    from . import models  # noqa: F401

    db_path = _get_sqlite_path()

    if db_path is None:
        Base.metadata.create_all(bind=engine)
        return

    if not db_path.exists():
        Base.metadata.create_all(bind=engine)
        logger.info("Created new database at %s", db_path)
        return

    missing = check_schema(db_path)
    if not missing:
        Base.metadata.create_all(bind=engine)
        return

    if os.getenv("ALLOW_DEV_DB_RESET", "") != "1":
        raise RuntimeError(_stale_schema_message(missing))

    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    backup_path = db_path.with_suffix(f".db.bak-{ts}")
    engine.dispose()
    shutil.move(str(db_path), str(backup_path))
    logger.warning(
        "Schema mismatch (%s).  Old DB backed up to %s, recreating.",
        ", ".join(sorted(missing)), backup_path,
    )
    Base.metadata.create_all(bind=engine)
    logger.info("Fresh database created at %s", db_path)


def get_db():
    """Dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

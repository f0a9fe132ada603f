"""Application settings."""
import os
from pathlib import Path

# Database file lives at repo root unless DATABASE_URL is set
REPO_ROOT = Path(__file__).resolve().parent.parent.parent
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{REPO_ROOT / 'progress.db'}")

# Admin API key for privileged endpoints (must be set in production)
ADMIN_KEY = os.getenv("ADMIN_KEY", "")

# Sessionization
GAP_THRESHOLD_MS = int(os.getenv("GAP_THRESHOLD_MS", str(2 * 60 * 1000)))
MIN_SESSION_MS = int(os.getenv("MIN_SESSION_MS", str(30 * 1000)))
SESSIONIZE_BATCH_LIMIT = int(os.getenv("SESSIONIZE_BATCH_LIMIT", "500"))

# Client clocks may run ahead; pings further in the future than this are clamped
FUTURE_SKEW_MS = int(os.getenv("FUTURE_SKEW_MS", str(5 * 60 * 1000)))

# Background workers
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "0") == "1"
SESSIONIZE_INTERVAL_SECONDS = int(os.getenv("SESSIONIZE_INTERVAL_SECONDS", "30"))
STALE_SWEEP_INTERVAL_SECONDS = int(os.getenv("STALE_SWEEP_INTERVAL_SECONDS", "60"))
NUDGE_INTERVAL_SECONDS = int(os.getenv("NUDGE_INTERVAL_SECONDS", "3600"))
NUDGE_USER_LIMIT = int(os.getenv("NUDGE_USER_LIMIT", "250"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

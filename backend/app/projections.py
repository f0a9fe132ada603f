"""Read-side projections for the progress endpoints and the dashboard."""
import logging
from collections import defaultdict
from typing import Dict, List, Optional

import numpy as np
from sqlalchemy.orm import Session

from .leveling import level_from_xp, xp_for_next_level
from .models import COMPLETED, Activity, ExperienceLedgerEntry, StreakDay, User
from .streaks import (
    VACATION_CAP,
    VACATION_COST,
    lifetime_experience,
    live_streak_length,
    streak_bonus_multiplier,
    vacation_balance,
)
from .timeutils import DAY_MS, day_start_of, now_ms as _now_ms, to_datetime
from .users import get_current_profile

logger = logging.getLogger(__name__)

WEEKDAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
KNOWN_SOURCES = ("youtube", "spotify", "anki")

XP_RANGES = {"7d": 7, "30d": 30, "all": 365}

# Used when the window has no tracked days to derive thresholds from
ABSOLUTE_THRESHOLDS = (5, 15, 30, 60)


def recent_activities(db: Session, user_id: str, limit: int = 20, offset: int = 0) -> List[Activity]:
    """Completed activities, newest first."""
    return (
        db.query(Activity)
        .filter(Activity.user_id == user_id, Activity.state == COMPLETED)
        .order_by(Activity.occurred_at.desc(), Activity.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def _source_bucket(source: Optional[str]) -> str:
    source = (source or "").lower()
    return source if source in KNOWN_SOURCES else "misc"


def weekly_source_minutes(db: Session, user_id: str, now_ms: Optional[int] = None) -> List[Dict]:
    """Minutes per source for each day of the current UTC Monday-Sunday week."""
    now = now_ms if now_ms is not None else _now_ms()
    today = day_start_of(now)
    monday = today - to_datetime(today).weekday() * DAY_MS
    week_end = monday + 7 * DAY_MS - 1

    bins = [{"day": label, **{s: 0 for s in KNOWN_SOURCES}, "misc": 0} for label in WEEKDAY_LABELS]

    rows = db.query(Activity.occurred_at, Activity.duration_ms, Activity.source).filter(
        Activity.user_id == user_id,
        Activity.state == COMPLETED,
        Activity.occurred_at >= monday,
        Activity.occurred_at <= week_end,
    ).all()
    for occurred_at, duration_ms, source in rows:
        index = (day_start_of(occurred_at) - monday) // DAY_MS
        bins[index][_source_bucket(source)] += max(0, duration_ms or 0) // 60000
    return bins


def _intensities(minutes: np.ndarray) -> np.ndarray:
    """
    Map minutes per day to heatmap intensities 0-4.

    Thresholds scale with the upper median of the non-zero days (falling back
    to the window average), with floors of 5/15/30/60 minutes.
    """
    nonzero = np.sort(minutes[minutes > 0])
    median = float(nonzero[len(nonzero) // 2]) if len(nonzero) else 0.0
    base = median if median > 0 else (float(minutes.mean()) if len(minutes) else 0.0)

    if base <= 0 or len(nonzero) == 0:
        thresholds = np.array(ABSOLUTE_THRESHOLDS, dtype=float)
    else:
        thresholds = np.array([
            max(5, base * 0.2),
            max(15, base * 0.4),
            max(30, base * 0.6),
            max(60, base * 0.8),
        ])

    # Below t1 -> 1, below t2 -> 2, below t3 -> 3, anything else -> 4
    levels = np.searchsorted(thresholds[:3], minutes, side="right") + 1
    return np.where(minutes > 0, np.minimum(levels, 4), 0)


def heatmap(db: Session, user: User, days: int = 365, now_ms: Optional[int] = None) -> Dict:
    now = now_ms if now_ms is not None else _now_ms()
    start = day_start_of(now - (days - 1) * DAY_MS)

    rows = db.query(StreakDay).filter(
        StreakDay.user_id == user.user_id,
        StreakDay.day_start >= start,
    ).all()
    by_day = {row.day_start: row for row in rows}

    minutes = np.zeros(days, dtype=np.int64)
    vacation_flags = []
    for i in range(days):
        row = by_day.get(start + i * DAY_MS)
        if row is not None:
            minutes[i] = max(0, row.tracked_duration_ms or 0) // 60000
        vacation_flags.append(bool(row is not None and row.credited and row.credit_kind == "vacation"))

    return {
        "start_day": start,
        "total_days": days,
        "values": _intensities(minutes).tolist(),
        "minutes": minutes.tolist(),
        "vacation_flags": vacation_flags,
        "current_streak": live_streak_length(db, user.user_id, now),
        "longest_streak": user.longest_streak or 0,
    }


def xp_timeseries(db: Session, user: User, range_key: str = "7d", now_ms: Optional[int] = None) -> Dict:
    """
    Contiguous daily XP series for the user's current language.

    Only positive deltas count, so reversals do not show as negative days.
    Raises ValueError for an unknown range.
    """
    if range_key not in XP_RANGES:
        raise ValueError(f"range must be one of {', '.join(XP_RANGES)}")
    days = XP_RANGES[range_key]
    now = now_ms if now_ms is not None else _now_ms()
    start = day_start_of(now - (days - 1) * DAY_MS)

    query = db.query(ExperienceLedgerEntry.occurred_at, ExperienceLedgerEntry.delta_experience).filter(
        ExperienceLedgerEntry.occurred_at >= start,
    )
    if user.current_target_language_id is not None:
        query = query.filter(
            ExperienceLedgerEntry.target_language_profile_id == user.current_target_language_id
        )
    else:
        query = query.filter(ExperienceLedgerEntry.user_id == user.user_id)

    buckets = defaultdict(int)
    for occurred_at, delta in query.all():
        buckets[day_start_of(occurred_at)] += max(0, delta)

    points = [
        {"day_start": start + i * DAY_MS, "xp": buckets.get(start + i * DAY_MS, 0)}
        for i in range(days)
    ]
    return {
        "range": range_key,
        "days": days,
        "start_day": start,
        "points": points,
        "total_xp": sum(p["xp"] for p in points),
    }


def streak_status(db: Session, user: User, now_ms: Optional[int] = None) -> Dict:
    """Streak and vacation state as the learner should see it at ``now_ms``."""
    current = live_streak_length(db, user.user_id, now_ms)
    xp = lifetime_experience(db, user)
    balance = vacation_balance(db, user)
    capped = balance >= VACATION_CAP
    remainder = xp % VACATION_COST
    return {
        "current_streak": current,
        "longest_streak": user.longest_streak or 0,
        "last_streak_credit_at": user.last_streak_credit_at,
        "vacation_balance": balance,
        "vacation_cap": VACATION_CAP,
        "vacation_capped": capped,
        "xp_per_vacation": VACATION_COST,
        "xp_towards_next_vacation": 0 if capped else remainder,
        "percent_to_next_vacation": 100.0 if capped else round(100.0 * remainder / VACATION_COST, 1),
        "streak_multiplier": streak_bonus_multiplier(current),
    }


def level_progress(db: Session, user: User) -> Optional[Dict]:
    """Level state of the current target language, or None without one."""
    profile = get_current_profile(db, user)
    if profile is None:
        return None
    total = profile.total_experience or 0
    progress = level_from_xp(total)
    cost = xp_for_next_level(progress.level)
    return {
        "language_code": profile.language_code,
        "total_experience": total,
        "total_duration_ms": profile.total_duration_ms or 0,
        "level": progress.level,
        "experience_towards_next_level": progress.remainder,
        "next_level_cost": cost,
        "percent_to_next_level": round(100.0 * progress.remainder / cost, 1),
    }

"""Experience ledger: XP awards, level snapshots and reversals.

Every change to a profile's XP is an appended ``ExperienceLedgerEntry``; the
profile's ``total_experience`` is a denormalized copy of the latest entry's
``running_total_after``.  Like the streak ledger, these functions flush but
never commit.
"""
import json
import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from .leveling import ExperienceSnapshot, apply_experience_totals
from .models import (
    COMPLETED,
    Activity,
    ExperienceLedgerEntry,
    StreakLedgerEntry,
    TargetLanguageProfile,
)
from .streaks import current_streak_multiplier, get_or_create_streak_day
from .timeutils import DAY_MS, day_start_of, now_ms as _now_ms
from .users import get_profile

logger = logging.getLogger(__name__)

# ~100 XP per hour of study
HOUR_XP = 100
BASE_RATE_PER_MINUTE = HOUR_XP / 60
# At most 16 hours per UTC day count towards XP
DAILY_XP_CAP_MINUTES = 16 * 60
# Self-reported entries are capped per entry, before multipliers
MAX_MANUAL_XP_PER_ENTRY = 300


class TargetLanguageNotFound(LookupError):
    """The user has no profile for the language an award was made in."""


@dataclass
class ExperienceAward:
    entry: ExperienceLedgerEntry
    snapshot: ExperienceSnapshot
    profile: TargetLanguageProfile


def _minutes(duration_ms: int) -> int:
    return max(0, int(duration_ms or 0)) // 60000


def xp_for_duration(
    db: Session,
    user_id: str,
    duration_ms: int,
    is_manually_tracked: bool,
    occurred_at: int,
    exclude_activity_id: Optional[int] = None,
) -> int:
    """
    Base XP earned for a study period of ``duration_ms``.

    - Only whole minutes count.
    - The user's other completed activities that UTC day consume a shared
      16 hour budget; this entry only earns for what is left of it.
    - Manually tracked entries are capped at MAX_MANUAL_XP_PER_ENTRY.
    """
    minutes = _minutes(duration_ms)
    if minutes <= 0:
        return 0

    day_start = day_start_of(occurred_at)
    query = db.query(Activity.duration_ms).filter(
        Activity.user_id == user_id,
        Activity.state == COMPLETED,
        Activity.occurred_at >= day_start,
        Activity.occurred_at <= day_start + DAY_MS - 1,
    )
    if exclude_activity_id is not None:
        query = query.filter(Activity.id != exclude_activity_id)
    minutes_today = sum(_minutes(duration) for (duration,) in query.all())

    remaining = max(0, DAILY_XP_CAP_MINUTES - minutes_today)
    effective_minutes = min(minutes, remaining)
    raw_xp = BASE_RATE_PER_MINUTE * effective_minutes
    if is_manually_tracked:
        raw_xp = min(raw_xp, MAX_MANUAL_XP_PER_ENTRY)
    return max(0, round(raw_xp))


def latest_ledger_entry(db: Session, profile_id: int) -> Optional[ExperienceLedgerEntry]:
    return (
        db.query(ExperienceLedgerEntry)
        .filter(ExperienceLedgerEntry.target_language_profile_id == profile_id)
        .order_by(ExperienceLedgerEntry.id.desc())
        .first()
    )


def ledger_history(db: Session, profile_id: int, limit: int = 50) -> List[ExperienceLedgerEntry]:
    """Most recent ledger entries for a profile, newest first."""
    return (
        db.query(ExperienceLedgerEntry)
        .filter(ExperienceLedgerEntry.target_language_profile_id == profile_id)
        .order_by(ExperienceLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )


def apply_experience(
    db: Session,
    user_id: str,
    language_code: str,
    base_delta: int,
    activity_id: Optional[int] = None,
    apply_streak_bonus: bool = False,
    occurred_at: Optional[int] = None,
    note: Optional[str] = None,
    now_ms: Optional[int] = None,
) -> ExperienceAward:
    """
    Append an XP delta to the user's ledger for ``language_code``.

    With ``apply_streak_bonus`` the delta is multiplied by the current streak
    multiplier (floored) and the multiplier is recorded on the entry so it is
    never recomputed later.

    Raises TargetLanguageNotFound if the user has no profile for the language.
    """
    profile = get_profile(db, user_id, language_code)
    if profile is None:
        raise TargetLanguageNotFound(
            f"User target language not found for user {user_id} and language {language_code}"
        )

    when = occurred_at if occurred_at is not None else (now_ms if now_ms is not None else _now_ms())

    latest = latest_ledger_entry(db, profile.id)
    previous_total = latest.running_total_after if latest else 0

    base = int(base_delta)
    final_delta = base
    multipliers = []
    if apply_streak_bonus:
        value = current_streak_multiplier(db, user_id)
        final_delta = math.floor(round(base * max(0.0, value), 6))
        multipliers.append({"type": "streak", "value": value})

    snapshot = apply_experience_totals(previous_total, final_delta)

    entry = ExperienceLedgerEntry(
        user_id=user_id,
        target_language_profile_id=profile.id,
        activity_id=activity_id,
        base_experience=base,
        multipliers_json=json.dumps(multipliers) if multipliers else None,
        delta_experience=final_delta,
        running_total_after=snapshot.new_total,
        occurred_at=when,
        previous_level=snapshot.previous_level,
        new_level=snapshot.new_level,
        levels_gained=snapshot.levels_gained,
        remainder_towards_next_level=snapshot.remainder_towards_next_level,
        next_level_cost=snapshot.next_level_cost,
        note=note,
    )
    db.add(entry)
    profile.total_experience = snapshot.new_total

    # Per-day XP aggregate and its audit line
    day_start = day_start_of(when)
    day = get_or_create_streak_day(db, user_id, day_start, when)
    day.xp_gained = max(0, (day.xp_gained or 0) + final_delta)
    day.last_event_at = max(day.last_event_at or 0, when)
    db.add(StreakLedgerEntry(
        user_id=user_id,
        day_start=day_start,
        occurred_at=when,
        reason="xp_delta",
        xp_delta=final_delta,
        source="user",
        note=note,
    ))
    db.flush()

    if snapshot.levels_gained > 0:
        logger.info(
            "%s reached level %d in %s (+%d XP)",
            user_id, snapshot.new_level, language_code, final_delta,
        )
    return ExperienceAward(entry=entry, snapshot=snapshot, profile=profile)


def activity_experience_total(db: Session, activity_id: int) -> int:
    """Sum of every ledger delta recorded against an activity."""
    deltas = db.query(ExperienceLedgerEntry.delta_experience).filter(
        ExperienceLedgerEntry.activity_id == activity_id
    ).all()
    return sum(delta for (delta,) in deltas)


def reverse_activity_experience(db: Session, activity: Activity,
                                now_ms: Optional[int] = None) -> int:
    """
    Undo all XP an activity earned by appending the negated historical sum.

    XP is never recomputed from the activity's duration, so formula changes
    since the award cannot alter what is taken back.  Returns the reversed
    (positive) amount; 0 means nothing was appended.
    """
    total = activity_experience_total(db, activity.id)
    if total == 0:
        return 0

    apply_experience(
        db,
        user_id=activity.user_id,
        language_code=activity.language_code,
        base_delta=-total,
        activity_id=activity.id,
        apply_streak_bonus=False,
        occurred_at=activity.occurred_at,
        note=f"reversal_of_activity:{activity.id}",
        now_ms=now_ms,
    )
    logger.info("Reversed %d XP for deleted activity %s", total, activity.id)
    return total

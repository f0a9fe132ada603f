"""Activity lifecycle: completion, manual entries and deletion.

``complete_activity`` is the single path by which a session turns into streak
credit and XP, whether it came from the sessionizer, the staleness sweep or a
self-reported entry.  It flushes only; ``add_manual_activity`` and
``delete_activity`` are request handlers and own their commit.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .experience import (
    TargetLanguageNotFound,
    apply_experience,
    reverse_activity_experience,
    xp_for_duration,
)
from .models import COMPLETED, DELETED, Activity, TargetLanguageProfile
from .streaks import StreakCreditResult, credit_activity, refresh_streak_day
from .timeutils import day_start_of, now_ms as _now_ms
from .users import get_current_profile, get_user

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"


@dataclass
class CompletionResult:
    activity: Activity
    streak: StreakCreditResult
    xp_awarded: int


@dataclass
class DeletionResult:
    deleted: bool
    reversed_experience: int = 0


def complete_activity(db: Session, activity: Activity,
                      now_ms: Optional[int] = None) -> CompletionResult:
    """
    Freeze ``activity`` as completed and credit it.

    - the profile's total_duration_ms grows by the activity's duration
    - the UTC day of ``activity.occurred_at`` is credited on the streak ledger
    - XP for the duration is appended with the streak bonus (nothing is
      appended when the duration earns 0 XP)
    """
    now = now_ms if now_ms is not None else _now_ms()

    user = get_user(db, activity.user_id)
    if user is None:
        raise LookupError(f"User {activity.user_id} not found")
    profile = db.get(TargetLanguageProfile, activity.target_language_profile_id)
    if profile is None:
        raise TargetLanguageNotFound(
            f"Target language profile {activity.target_language_profile_id} not found"
        )

    activity.state = COMPLETED
    activity.updated_at = now
    profile.total_duration_ms = (profile.total_duration_ms or 0) + (activity.duration_ms or 0)
    db.flush()

    streak = credit_activity(db, user, activity.occurred_at, now)

    xp = xp_for_duration(
        db,
        user.user_id,
        activity.duration_ms,
        activity.is_manually_tracked,
        activity.occurred_at,
        exclude_activity_id=activity.id,
    )
    awarded = 0
    if xp > 0:
        award = apply_experience(
            db,
            user_id=user.user_id,
            language_code=profile.language_code,
            base_delta=xp,
            activity_id=activity.id,
            apply_streak_bonus=True,
            occurred_at=activity.occurred_at,
            now_ms=now,
        )
        awarded = award.entry.delta_experience

    logger.info(
        "Completed activity %s for %s: %d ms, +%d XP, streak %d",
        activity.id, user.user_id, activity.duration_ms, awarded, streak.current_streak,
    )
    return CompletionResult(activity=activity, streak=streak, xp_awarded=awarded)


def add_manual_activity(
    db: Session,
    user_id: str,
    title: Optional[str],
    duration_ms: int,
    occurred_at: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> CompletionResult:
    """Record self-reported study time against the user's current language.

    Raises LookupError for an unknown user and TargetLanguageNotFound when the
    user has not picked a target language yet.
    """
    now = now_ms if now_ms is not None else _now_ms()
    user = get_user(db, user_id)
    if user is None:
        raise LookupError(f"User {user_id} not found")
    profile = get_current_profile(db, user)
    if profile is None:
        raise TargetLanguageNotFound(f"User {user_id} has no target language")

    started = occurred_at if occurred_at is not None else now - duration_ms
    activity = Activity(
        user_id=user_id,
        target_language_profile_id=profile.id,
        content_key=None,
        state=COMPLETED,
        title=title,
        language_code=profile.language_code,
        duration_ms=duration_ms,
        source=MANUAL_SOURCE,
        is_manually_tracked=True,
        occurred_at=started,
        last_event_at=started + duration_ms,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(activity)
        db.flush()
        result = complete_activity(db, activity, now)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Manual activity for %s failed", user_id)
        raise
    db.refresh(activity)
    return result


def delete_activity(db: Session, user_id: str, activity_id: int,
                    now_ms: Optional[int] = None) -> DeletionResult:
    """
    Delete a completed activity and take back everything it earned.

    The XP reversal is the negated sum of the ledger entries tied to the
    activity.  The streak credit of its day is kept.
    Returns ``deleted=False`` when the activity does not exist for the user or
    was already deleted.
    """
    now = now_ms if now_ms is not None else _now_ms()
    activity = db.query(Activity).filter(
        Activity.id == activity_id,
        Activity.user_id == user_id,
    ).first()
    if activity is None or activity.state == DELETED:
        return DeletionResult(deleted=False)

    try:
        was_completed = activity.state == COMPLETED
        reversed_xp = reverse_activity_experience(db, activity, now)

        if was_completed:
            profile = db.get(TargetLanguageProfile, activity.target_language_profile_id)
            if profile is not None:
                profile.total_duration_ms = max(
                    0, (profile.total_duration_ms or 0) - (activity.duration_ms or 0)
                )

        activity.state = DELETED
        activity.updated_at = now
        db.flush()

        if was_completed:
            refresh_streak_day(db, user_id, day_start_of(activity.occurred_at), activity.occurred_at)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Deleting activity %s for %s failed", activity_id, user_id)
        raise

    logger.info("Deleted activity %s for %s (-%d XP)", activity_id, user_id, reversed_xp)
    return DeletionResult(deleted=True, reversed_experience=reversed_xp)

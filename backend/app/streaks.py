"""Streak ledger: day crediting, vacation credits and the streak bonus.

Functions here only flush; the calling handler owns the transaction and
commits (or rolls back) the streak change together with the XP award that
goes with it.  ``nudge_all_users`` is the exception: it is a job and commits
once per user.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import (
    COMPLETED,
    Activity,
    ExperienceLedgerEntry,
    StreakDay,
    StreakLedgerEntry,
    User,
    VacationLedgerEntry,
)
from .timeutils import DAY_MS, day_start_of, now_ms as _now_ms

logger = logging.getLogger(__name__)

VACATION_CAP = 7
VACATION_COST = 1500  # lifetime XP per earned vacation credit

HABIT_CAP_DAYS = 21
BASE_MULTIPLIER = 1.0
MAX_MULTIPLIER = 2.0


@dataclass
class StreakCreditResult:
    current_streak: int
    longest_streak: int
    did_credit: bool
    used_vacation: bool = False


@dataclass
class NudgeResult:
    used_vacation: bool
    covered_day_start: Optional[int] = None


def streak_bonus_multiplier(current_streak: int) -> float:
    """Linear ramp from 1.0x at no streak to 2.0x at HABIT_CAP_DAYS, flat after."""
    progress = min(1.0, max(0, current_streak) / HABIT_CAP_DAYS)
    return round(BASE_MULTIPLIER + (MAX_MULTIPLIER - BASE_MULTIPLIER) * progress, 3)


def get_streak_day(db: Session, user_id: str, day_start: int) -> Optional[StreakDay]:
    return db.query(StreakDay).filter(
        StreakDay.user_id == user_id,
        StreakDay.day_start == day_start,
    ).first()


def get_or_create_streak_day(db: Session, user_id: str, day_start: int, now: int) -> StreakDay:
    day = get_streak_day(db, user_id, day_start)
    if day is None:
        day = StreakDay(
            user_id=user_id,
            day_start=day_start,
            tracked_duration_ms=0,
            xp_gained=0,
            credited=False,
            streak_length=0,
            last_event_at=now,
        )
        db.add(day)
        db.flush()
    return day


def most_recent_credited_day(
    db: Session, user_id: str, before_day_start: Optional[int] = None
) -> Optional[StreakDay]:
    """Latest credited day, optionally restricted to days strictly before a bucket."""
    query = db.query(StreakDay).filter(
        StreakDay.user_id == user_id,
        StreakDay.credited.is_(True),
    )
    if before_day_start is not None:
        query = query.filter(StreakDay.day_start < before_day_start)
    return query.order_by(StreakDay.day_start.desc()).first()


def live_streak_length(db: Session, user_id: str, now_ms: Optional[int] = None) -> int:
    """Streak length as of ``now_ms``.

    0 once the latest credited day is more than two buckets back, since not
    even a vacation credit can carry it any more.
    """
    now = now_ms if now_ms is not None else _now_ms()
    latest = most_recent_credited_day(db, user_id)
    if latest is None or day_start_of(now) - latest.day_start > 2 * DAY_MS:
        return 0
    return latest.streak_length


def current_streak_multiplier(db: Session, user_id: str) -> float:
    """Bonus multiplier for the user's streak as of the latest credited day."""
    latest = most_recent_credited_day(db, user_id)
    return streak_bonus_multiplier(latest.streak_length if latest else 0)


def lifetime_experience(db: Session, user: User) -> int:
    """Running XP total of the user's current target language, from the ledger."""
    if user.current_target_language_id is None:
        return 0
    latest = (
        db.query(ExperienceLedgerEntry)
        .filter(ExperienceLedgerEntry.target_language_profile_id == user.current_target_language_id)
        .order_by(ExperienceLedgerEntry.id.desc())
        .first()
    )
    return max(0, latest.running_total_after) if latest else 0


def vacation_balance(db: Session, user: User) -> int:
    """
    Vacation credits available to the user.

    The earned portion is derived from lifetime XP rather than stored, so the
    balance is always reconstructible from the ledgers:
        clamp(floor(xp / VACATION_COST) + grants - uses, 0, VACATION_CAP)
    """
    earned = lifetime_experience(db, user) // VACATION_COST
    counts = dict(
        db.query(VacationLedgerEntry.reason, func.count(VacationLedgerEntry.id))
        .filter(VacationLedgerEntry.user_id == user.user_id)
        .group_by(VacationLedgerEntry.reason)
        .all()
    )
    balance = earned + counts.get("grant", 0) - counts.get("use", 0)
    return min(VACATION_CAP, max(0, balance))


def grant_vacation(db: Session, user: User, source: str = "admin",
                   now_ms: Optional[int] = None) -> VacationLedgerEntry:
    """Append a vacation-credit grant (purchases, support gestures)."""
    now = now_ms if now_ms is not None else _now_ms()
    balance = vacation_balance(db, user)
    entry = VacationLedgerEntry(
        user_id=user.user_id,
        occurred_at=now,
        reason="grant",
        delta=1,
        balance_after=min(VACATION_CAP, balance + 1),
        source=source,
    )
    db.add(entry)
    db.flush()
    logger.info("Granted vacation credit to %s (source=%s)", user.user_id, source)
    return entry


def refresh_streak_day(db: Session, user_id: str, day_start: int, event_at: int) -> StreakDay:
    """Recompute a day's tracked duration and XP aggregates from their sources."""
    day_end = day_start + DAY_MS - 1

    tracked_ms = db.query(func.coalesce(func.sum(Activity.duration_ms), 0)).filter(
        Activity.user_id == user_id,
        Activity.state == COMPLETED,
        Activity.occurred_at >= day_start,
        Activity.occurred_at <= day_end,
    ).scalar()
    xp_gained = db.query(func.coalesce(func.sum(ExperienceLedgerEntry.delta_experience), 0)).filter(
        ExperienceLedgerEntry.user_id == user_id,
        ExperienceLedgerEntry.occurred_at >= day_start,
        ExperienceLedgerEntry.occurred_at <= day_end,
    ).scalar()

    day = get_or_create_streak_day(db, user_id, day_start, event_at)
    day.tracked_duration_ms = max(0, int(tracked_ms))
    day.xp_gained = max(0, int(xp_gained))
    day.last_event_at = max(day.last_event_at or 0, event_at)
    db.flush()
    return day


def _credit_missing_day_with_vacation(
    db: Session,
    user: User,
    missing_day_start: int,
    previous_streak_length: int,
    now: int,
    source: str,
) -> bool:
    """Cover ``missing_day_start`` with one vacation credit.  False if none left."""
    balance = vacation_balance(db, user)
    if balance <= 0:
        return False

    covered_length = previous_streak_length + 1
    day = get_or_create_streak_day(db, user.user_id, missing_day_start, now)
    if not day.credited:
        day.credited = True
        day.credit_kind = "vacation"
        day.streak_length = covered_length
        day.vacation_applied_at = now

    db.add(StreakLedgerEntry(
        user_id=user.user_id,
        day_start=missing_day_start,
        occurred_at=now,
        reason="credit_vacation",
        streak_length_after=covered_length,
        source=source,
    ))
    db.add(VacationLedgerEntry(
        user_id=user.user_id,
        occurred_at=now,
        reason="use",
        delta=-1,
        balance_after=balance - 1,
        covered_day_start=missing_day_start,
        source=source,
    ))
    db.flush()
    logger.info(
        "Vacation credit covered day %s for %s (streak %d, source=%s)",
        missing_day_start, user.user_id, covered_length, source,
    )
    return True


def _sync_user_streak(db: Session, user: User) -> None:
    latest = most_recent_credited_day(db, user.user_id)
    current = latest.streak_length if latest else 0
    user.current_streak = current
    user.longest_streak = max(user.longest_streak or 0, current)
    db.flush()


def credit_activity(db: Session, user: User, occurred_at: int,
                    now_ms: Optional[int] = None) -> StreakCreditResult:
    """
    Credit the UTC day containing ``occurred_at`` towards the user's streak.

    Gap to the previous credited day:
      - 1 day:  streak continues (+1)
      - 2 days: the missing day is bridged with a vacation credit if one is
                available (+2), otherwise the streak restarts at 1
      - other:  streak restarts at 1
    A day that is already credited is left untouched.
    """
    now = now_ms if now_ms is not None else _now_ms()
    day_start = day_start_of(occurred_at)

    today = refresh_streak_day(db, user.user_id, day_start, occurred_at)

    if today.credited:
        _sync_user_streak(db, user)
        return StreakCreditResult(
            current_streak=user.current_streak,
            longest_streak=user.longest_streak,
            did_credit=False,
        )

    previous = most_recent_credited_day(db, user.user_id, before_day_start=day_start)
    streak_length = 1
    used_vacation = False

    if previous is not None:
        gap = day_start - previous.day_start
        if gap == DAY_MS:
            streak_length = previous.streak_length + 1
        elif gap == 2 * DAY_MS:
            used_vacation = _credit_missing_day_with_vacation(
                db, user, previous.day_start + DAY_MS, previous.streak_length, now, source="user",
            )
            if used_vacation:
                streak_length = previous.streak_length + 2

    db.add(StreakLedgerEntry(
        user_id=user.user_id,
        day_start=day_start,
        occurred_at=now,
        reason="credit_activity",
        streak_length_after=streak_length,
        source="user",
    ))
    today.credited = True
    today.credit_kind = "activity"
    today.streak_length = streak_length
    user.last_streak_credit_at = now
    db.flush()

    _sync_user_streak(db, user)
    logger.info("Credited day %s for %s: streak %d", day_start, user.user_id, streak_length)
    return StreakCreditResult(
        current_streak=user.current_streak,
        longest_streak=user.longest_streak,
        did_credit=True,
        used_vacation=used_vacation,
    )


def nudge_user_streak(db: Session, user: User, now_ms: Optional[int] = None) -> NudgeResult:
    """Auto-bridge a single missed day if the user is about to lose the streak.

    Applies only when the latest credited day is exactly two buckets before
    today; never covers more than one day.
    """
    now = now_ms if now_ms is not None else _now_ms()
    today_start = day_start_of(now)

    previous = most_recent_credited_day(db, user.user_id)
    if previous is None or today_start - previous.day_start != 2 * DAY_MS:
        return NudgeResult(used_vacation=False)

    missing_day_start = previous.day_start + DAY_MS
    missing = get_streak_day(db, user.user_id, missing_day_start)
    if missing is not None and missing.credited:
        return NudgeResult(used_vacation=False)

    if not _credit_missing_day_with_vacation(
        db, user, missing_day_start, previous.streak_length, now, source="system",
    ):
        return NudgeResult(used_vacation=False)

    _sync_user_streak(db, user)
    return NudgeResult(used_vacation=True, covered_day_start=missing_day_start)


def _nudge_candidates(db: Session, today_start: int, after_id: int, limit: int):
    """Users whose latest credited day is two buckets before today, by id."""
    latest = (
        db.query(
            StreakDay.user_id.label("user_id"),
            func.max(StreakDay.day_start).label("latest_day"),
        )
        .filter(StreakDay.credited.is_(True))
        .group_by(StreakDay.user_id)
        .subquery()
    )
    return (
        db.query(User)
        .join(latest, latest.c.user_id == User.user_id)
        .filter(latest.c.latest_day == today_start - 2 * DAY_MS, User.id > after_id)
        .order_by(User.id)
        .limit(limit)
        .all()
    )


def nudge_all_users(db: Session, now_ms: Optional[int] = None, limit: int = 250) -> int:
    """Run the vacation nudge over every user about to lose a streak.

    Candidates are paged by user id, ``limit`` at a time, so users without a
    vacation credit never starve the ones behind them.  Returns bridges made.
    """
    now = now_ms if now_ms is not None else _now_ms()
    today_start = day_start_of(now)

    bridged = 0
    after_id = 0
    while True:
        page = _nudge_candidates(db, today_start, after_id, limit)
        if not page:
            break
        for user in page:
            after_id = user.id
            try:
                result = nudge_user_streak(db, user, now)
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("Streak nudge failed for %s", user.user_id)
                raise
            if result.used_vacation:
                bridged += 1
    return bridged

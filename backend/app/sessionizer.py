"""Sessionizer: turns raw playback pings into Activities.

``build_sessions`` is the pure windowing step.  ``process_batch`` and
``sweep_stale_activities`` are the periodic jobs around it; both commit once
per unit of work (a ``(user, content_key)`` group or a single activity) and
delete raw events only in the same transaction as the state that consumed
them.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from .activities import complete_activity
from .labels import LABEL_FAILED, LABEL_PENDING, get_label, is_label_ready
from .models import COMPLETED, DELETED, IN_PROGRESS, Activity, RawActivityEvent
from .settings import GAP_THRESHOLD_MS, MIN_SESSION_MS, SESSIONIZE_BATCH_LIMIT
from .timeutils import now_ms as _now_ms
from .users import get_current_profile, get_user

logger = logging.getLogger(__name__)

OPENING_TYPES = ("start", "heartbeat")
CLOSING_TYPES = ("pause", "end")


@dataclass
class SessionWindow:
    start_ms: int
    end_ms: int
    events: list = field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass
class SessionPlan:
    closed: List[SessionWindow]
    trailing: Optional[SessionWindow]
    orphans: list


@dataclass
class BatchResult:
    processed: int = 0
    created_activities: int = 0
    completed_activities: int = 0
    waiting_on_labeling: int = 0
    discarded: int = 0


@dataclass
class SweepResult:
    completed: int = 0
    discarded: int = 0


def build_sessions(events: Iterable, gap_ms: int = GAP_THRESHOLD_MS) -> SessionPlan:
    """
    Window a single ``(user, content_key)`` stream into sessions.

    Events are ordered by ``(occurred_at, id)``, never by arrival.  A
    start/heartbeat opens or extends the open session, a pause/end closes it,
    and a gap larger than ``gap_ms`` closes it at the previous event's time.
    Closing events with no open session are orphans.
    """
    ordered = sorted(events, key=lambda e: (e.occurred_at, e.id or 0))

    closed: List[SessionWindow] = []
    orphans = []
    current: Optional[SessionWindow] = None

    for event in ordered:
        t = event.occurred_at
        if current is not None and t - current.end_ms > gap_ms:
            closed.append(current)
            current = None

        if event.activity_type in OPENING_TYPES:
            if current is None:
                current = SessionWindow(start_ms=t, end_ms=t, events=[event])
            else:
                current.end_ms = t
                current.events.append(event)
        elif event.activity_type in CLOSING_TYPES:
            if current is None:
                orphans.append(event)
            else:
                current.end_ms = t
                current.events.append(event)
                closed.append(current)
                current = None
        else:
            orphans.append(event)

    return SessionPlan(closed=closed, trailing=current, orphans=orphans)


def _delete_events(db: Session, events) -> int:
    """Delete raw events by id.  Returns how many were still there."""
    ids = [event.id for event in events]
    if not ids:
        return 0
    deleted = db.query(RawActivityEvent).filter(RawActivityEvent.id.in_(ids)).delete(
        synchronize_session=False,
    )
    db.flush()
    return deleted


def _claim(db: Session, activity: Activity, state: str, now: int) -> bool:
    """Move ``activity`` out of in-progress unless another worker already did.

    The conditional UPDATE is the claim; the row is reloaded afterwards so the
    caller works from committed duration and timestamps.
    """
    claimed = db.query(Activity).filter(
        Activity.id == activity.id,
        Activity.state == IN_PROGRESS,
    ).update({"state": state, "updated_at": now}, synchronize_session=False)
    db.refresh(activity)
    return claimed == 1


def _in_progress_activity(db: Session, user_id: str, content_key: str) -> Optional[Activity]:
    return db.query(Activity).filter(
        Activity.user_id == user_id,
        Activity.content_key == content_key,
        Activity.state == IN_PROGRESS,
    ).first()


def _overlaps(activity: Activity, window: SessionWindow) -> bool:
    last = activity.last_event_at if activity.last_event_at is not None else activity.occurred_at
    return activity.occurred_at <= window.end_ms and last >= window.start_ms


def _maintain(db: Session, user_id: str, content_key: str, window: SessionWindow,
              now: int, result: BatchResult) -> None:
    """Keep an in-progress Activity in step with a still-open session."""
    user = get_user(db, user_id)
    profile = get_current_profile(db, user) if user is not None else None
    if profile is None:
        # Finalization deletes these once the session closes
        return

    label = get_label(db, content_key)
    activity = _in_progress_activity(db, user_id, content_key)
    if activity is None:
        activity = Activity(
            user_id=user_id,
            target_language_profile_id=profile.id,
            content_key=content_key,
            state=IN_PROGRESS,
            duration_ms=0,
            source=window.events[0].source,
            is_manually_tracked=False,
            occurred_at=window.start_ms,
            created_at=now,
        )
        db.add(activity)
        result.created_activities += 1
    elif not _overlaps(activity, window):
        # An older session for this key has not been resolved yet
        return

    activity.occurred_at = min(activity.occurred_at, window.start_ms)
    activity.duration_ms = max(activity.duration_ms or 0, window.end_ms - activity.occurred_at)
    activity.last_event_at = max(activity.last_event_at or 0, window.end_ms)
    activity.updated_at = now
    if label is not None:
        activity.title = label.title or activity.title
        if label.language_code:
            activity.language_code = label.language_code
    db.flush()


def _finalize(db: Session, user_id: str, content_key: str, window: SessionWindow,
              now: int, result: BatchResult) -> None:
    user = get_user(db, user_id)
    profile = get_current_profile(db, user) if user is not None else None
    if profile is None:
        logger.warning(
            "Discarding %d events for %s/%s: user or target language missing",
            len(window.events), user_id, content_key,
        )
        _delete_events(db, window.events)
        result.discarded += len(window.events)
        return

    label = get_label(db, content_key)
    if label is not None and label.stage == LABEL_FAILED:
        logger.info("Discarding %d events for %s: labeling failed", len(window.events), content_key)
        existing = _in_progress_activity(db, user_id, content_key)
        if existing is not None and _overlaps(existing, window):
            _claim(db, existing, DELETED, now)
        _delete_events(db, window.events)
        result.discarded += len(window.events)
        return

    if not is_label_ready(label):
        ids = [event.id for event in window.events]
        db.query(RawActivityEvent).filter(RawActivityEvent.id.in_(ids)).update(
            {"is_waiting_on_labeling": True}, synchronize_session=False,
        )
        db.flush()
        result.waiting_on_labeling += len(window.events)
        return

    existing = _in_progress_activity(db, user_id, content_key)
    if existing is not None and not _overlaps(existing, window):
        existing = None

    if label.language_code != profile.language_code:
        logger.info(
            "Discarding session on %s for %s: content is %s, learning %s",
            content_key, user_id, label.language_code, profile.language_code,
        )
        if existing is not None:
            _claim(db, existing, DELETED, now)
        _delete_events(db, window.events)
        result.discarded += len(window.events)
        return

    source = window.events[0].source
    # Consuming the events is what entitles this run to credit them
    consumed = _delete_events(db, window.events)
    if consumed < len(window.events):
        logger.info(
            "Window on %s for %s was already consumed (%d of %d events left)",
            content_key, user_id, consumed, len(window.events),
        )
        result.discarded += consumed
        return

    if existing is not None and not _claim(db, existing, COMPLETED, now):
        logger.info("Activity %s already resolved; dropping its window on %s", existing.id, content_key)
        result.discarded += consumed
        return

    if existing is None:
        activity = Activity(
            user_id=user_id,
            target_language_profile_id=profile.id,
            content_key=content_key,
            state=COMPLETED,
            source=source,
            is_manually_tracked=False,
            occurred_at=window.start_ms,
            created_at=now,
        )
        db.add(activity)
        result.created_activities += 1
    else:
        activity = existing
        activity.occurred_at = min(activity.occurred_at, window.start_ms)

    activity.target_language_profile_id = profile.id
    activity.title = label.title or activity.title
    activity.language_code = label.language_code
    activity.duration_ms = max(activity.duration_ms or 0, window.end_ms - activity.occurred_at)
    activity.last_event_at = max(activity.last_event_at or 0, window.end_ms)
    activity.updated_at = now
    db.flush()

    complete_activity(db, activity, now)
    result.completed_activities += 1


def process_batch(db: Session, limit: int = SESSIONIZE_BATCH_LIMIT,
                  now_ms: Optional[int] = None) -> BatchResult:
    """
    Sessionize up to ``limit`` of the oldest raw events.

    Each ``(user_id, content_key)`` group is committed on its own.  A failing
    group is rolled back and the error re-raised; its events stay in the
    backlog for the next run.
    """
    now = now_ms if now_ms is not None else _now_ms()
    result = BatchResult()

    # Parked events come back once their label is written; see labels.release_waiting_events
    rows = (
        db.query(RawActivityEvent.id, RawActivityEvent.user_id, RawActivityEvent.content_key)
        .filter(RawActivityEvent.is_waiting_on_labeling.is_(False))
        .order_by(RawActivityEvent.occurred_at, RawActivityEvent.id)
        .limit(limit)
        .all()
    )
    if not rows:
        return result
    result.processed = len(rows)

    groups = OrderedDict()
    for event_id, user_id, content_key in rows:
        groups.setdefault((user_id, content_key), []).append(event_id)

    for (user_id, content_key), event_ids in groups.items():
        try:
            # Loaded per group: earlier commits expire instances and the sweep may
            # have consumed some of these since the scan
            group = db.query(RawActivityEvent).filter(RawActivityEvent.id.in_(event_ids)).all()
            plan = build_sessions(group, GAP_THRESHOLD_MS)

            if plan.orphans:
                _delete_events(db, plan.orphans)
                result.discarded += len(plan.orphans)

            for window in plan.closed:
                _finalize(db, user_id, content_key, window, now, result)

            if plan.trailing is not None:
                if now - plan.trailing.end_ms > GAP_THRESHOLD_MS:
                    _finalize(db, user_id, content_key, plan.trailing, now, result)
                else:
                    _maintain(db, user_id, content_key, plan.trailing, now, result)

            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Sessionizing %s/%s failed", user_id, content_key)
            raise

    logger.info(
        "Sessionized %d events: %d created, %d completed, %d waiting, %d discarded",
        result.processed, result.created_activities, result.completed_activities,
        result.waiting_on_labeling, result.discarded,
    )
    return result


def sweep_stale_activities(db: Session, now_ms: Optional[int] = None) -> SweepResult:
    """
    Resolve in-progress Activities the batch job has stopped updating.

    Long enough ones are completed, short ones are dropped uncounted.  Either
    way the raw events they were built from are deleted so they cannot be
    credited a second time.  Activities whose content is still being labeled
    are left alone.

    Each activity is claimed with a conditional update before it is credited,
    so a concurrent batch run and this sweep never both complete it.
    """
    now = now_ms if now_ms is not None else _now_ms()
    result = SweepResult()

    stale = (
        db.query(Activity)
        .filter(
            Activity.state == IN_PROGRESS,
            Activity.updated_at < now - GAP_THRESHOLD_MS,
        )
        .order_by(Activity.id)
        .all()
    )

    for activity in stale:
        try:
            db.refresh(activity)
            if activity.state != IN_PROGRESS:
                continue
            label = get_label(db, activity.content_key) if activity.content_key else None
            user = get_user(db, activity.user_id)
            profile = get_current_profile(db, user) if user is not None else None

            if profile is not None and label is not None and label.stage in LABEL_PENDING:
                continue

            keep = (
                profile is not None
                and is_label_ready(label)
                and label.language_code == profile.language_code
                and (activity.duration_ms or 0) >= MIN_SESSION_MS
            )
            if not _claim(db, activity, COMPLETED if keep else DELETED, now):
                # The batch job finalized it since the scan
                db.rollback()
                continue

            if keep:
                activity.target_language_profile_id = profile.id
                activity.language_code = label.language_code
                complete_activity(db, activity, now)
                result.completed += 1
            else:
                result.discarded += 1

            last_event_at = activity.last_event_at if activity.last_event_at is not None else activity.occurred_at
            db.query(RawActivityEvent).filter(
                RawActivityEvent.user_id == activity.user_id,
                RawActivityEvent.content_key == activity.content_key,
                RawActivityEvent.occurred_at <= last_event_at,
            ).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Sweeping activity %s failed", activity.id)
            raise

    if result.completed or result.discarded:
        logger.info("Swept stale activities: %d completed, %d discarded",
                    result.completed, result.discarded)
    return result

"""Tests for session reconstruction from raw pings."""
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.db import Base
from backend.app.labels import upsert_label
from backend.app.models import (
    COMPLETED,
    DELETED,
    IN_PROGRESS,
    Activity,
    ExperienceLedgerEntry,
    RawActivityEvent,
)
from backend.app import sessionizer
from backend.app.sessionizer import build_sessions, process_batch, sweep_stale_activities
from backend.app.timeutils import DAY_MS
from backend.app.users import create_user, get_profile

T = 19_700 * DAY_MS + 10 * 60 * 60 * 1000  # 10:00 UTC on an arbitrary day
SECOND = 1000
MINUTE = 60 * SECOND
GAP = 2 * MINUTE
CONTENT = "youtube:abc123"


@pytest.fixture(scope="function")
def session_factory():
    """Fresh in-memory database for each test; sessions share one connection."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    yield TestingSessionLocal
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user(db):
    return create_user(db, "learner-1", "ja", now_ms=T - DAY_MS)


@pytest.fixture
def japanese_label(db):
    return upsert_label(db, CONTENT, "completed", language_code="ja", title="NHK News", now_ms=T - DAY_MS)


def _event(db, activity_type, occurred_at, user_id="learner-1", content_key=CONTENT):
    event = RawActivityEvent(
        user_id=user_id,
        content_key=content_key,
        activity_type=activity_type,
        occurred_at=occurred_at,
        source="youtube",
        url="https://www.youtube.com/watch?v=abc123",
        is_waiting_on_labeling=False,
        received_at=occurred_at,
    )
    db.add(event)
    db.commit()
    return event


def _ping(event_id, activity_type, occurred_at):
    return SimpleNamespace(id=event_id, activity_type=activity_type, occurred_at=occurred_at)


class TestBuildSessions:

    def test_heartbeats_within_gap_merge(self):
        plan = build_sessions([_ping(1, "heartbeat", T), _ping(2, "heartbeat", T + 90 * SECOND)], GAP)

        assert plan.closed == []
        assert plan.trailing.start_ms == T
        assert plan.trailing.end_ms == T + 90 * SECOND

    def test_gap_splits_sessions(self):
        plan = build_sessions([_ping(1, "heartbeat", T), _ping(2, "heartbeat", T + 3 * MINUTE)], GAP)

        assert len(plan.closed) == 1
        assert plan.closed[0].start_ms == plan.closed[0].end_ms == T
        assert plan.trailing.start_ms == T + 3 * MINUTE

    def test_pause_closes_session(self):
        plan = build_sessions([
            _ping(1, "start", T),
            _ping(2, "heartbeat", T + 30 * SECOND),
            _ping(3, "pause", T + 45 * SECOND),
            _ping(4, "start", T + 60 * SECOND),
        ], GAP)

        assert len(plan.closed) == 1
        assert plan.closed[0].duration_ms == 45 * SECOND
        assert [e.id for e in plan.closed[0].events] == [1, 2, 3]
        assert plan.trailing.start_ms == T + 60 * SECOND

    def test_orders_by_occurrence_not_arrival(self):
        plan = build_sessions([
            _ping(3, "end", T + 60 * SECOND),
            _ping(1, "start", T),
            _ping(2, "heartbeat", T + 30 * SECOND),
        ], GAP)

        assert len(plan.closed) == 1
        assert plan.closed[0].duration_ms == 60 * SECOND
        assert plan.trailing is None

    def test_stray_pause_is_orphan(self):
        plan = build_sessions([_ping(1, "pause", T), _ping(2, "end", T + SECOND)], GAP)

        assert plan.closed == []
        assert plan.trailing is None
        assert [e.id for e in plan.orphans] == [1, 2]


class TestProcessBatch:

    def test_empty_backlog_is_noop(self, db):
        result = process_batch(db, limit=100, now_ms=T)

        assert result.processed == 0
        assert result.created_activities == 0
        assert result.completed_activities == 0

    def test_heartbeats_90s_apart_make_one_activity(self, db, user, japanese_label):
        _event(db, "heartbeat", T)
        _event(db, "heartbeat", T + 90 * SECOND)

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.processed == 2
        assert result.created_activities == 1
        assert result.completed_activities == 1
        activity = db.query(Activity).one()
        assert activity.state == COMPLETED
        assert activity.occurred_at == T
        assert activity.duration_ms == 90 * SECOND
        assert activity.title == "NHK News"
        assert activity.language_code == "ja"
        assert db.query(RawActivityEvent).count() == 0

    def test_completion_credits_streak_and_xp(self, db, user, japanese_label):
        _event(db, "start", T)
        _event(db, "end", T + 30 * MINUTE)

        process_batch(db, limit=100, now_ms=T + 31 * MINUTE)

        db.refresh(user)
        assert user.current_streak == 1
        profile = get_profile(db, "learner-1", "ja")
        assert profile.total_duration_ms == 30 * MINUTE
        # 50 base XP with the day-one streak bonus of 1.048
        assert profile.total_experience == 52
        entry = db.query(ExperienceLedgerEntry).one()
        assert entry.activity_id == db.query(Activity).one().id

    def test_events_three_minutes_apart_make_two_activities(self, db, user, japanese_label):
        _event(db, "heartbeat", T)
        _event(db, "heartbeat", T + 3 * MINUTE)

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.created_activities == 2
        assert result.completed_activities == 2
        assert db.query(Activity).filter(Activity.state == COMPLETED).count() == 2

    def test_open_session_is_maintained_then_completed(self, db, user, japanese_label):
        _event(db, "heartbeat", T)

        first = process_batch(db, limit=100, now_ms=T + 30 * SECOND)

        assert first.created_activities == 1
        assert first.completed_activities == 0
        activity = db.query(Activity).one()
        assert activity.state == IN_PROGRESS
        assert db.query(RawActivityEvent).count() == 1

        _event(db, "heartbeat", T + 60 * SECOND)
        second = process_batch(db, limit=100, now_ms=T + 60 * SECOND + 5 * MINUTE)

        assert second.created_activities == 0
        assert second.completed_activities == 1
        activity = db.query(Activity).one()
        assert activity.state == COMPLETED
        assert activity.duration_ms == 60 * SECOND
        assert db.query(RawActivityEvent).count() == 0

    def test_unlabeled_content_waits(self, db, user):
        _event(db, "start", T)
        _event(db, "end", T + 5 * MINUTE)

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.waiting_on_labeling == 2
        assert db.query(Activity).count() == 0
        events = db.query(RawActivityEvent).all()
        assert len(events) == 2
        assert all(e.is_waiting_on_labeling for e in events)

        upsert_label(db, CONTENT, "completed", language_code="ja", now_ms=T + 11 * MINUTE)
        retry = process_batch(db, limit=100, now_ms=T + 12 * MINUTE)

        assert retry.completed_activities == 1
        assert db.query(RawActivityEvent).count() == 0

    def test_label_without_language_waits(self, db, user):
        upsert_label(db, CONTENT, "completed", language_code=None, now_ms=T)
        _event(db, "start", T)
        _event(db, "end", T + 5 * MINUTE)

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.waiting_on_labeling == 2

    def test_failed_label_discards_events(self, db, user):
        upsert_label(db, CONTENT, "failed", now_ms=T)
        _event(db, "start", T)
        _event(db, "end", T + 5 * MINUTE)

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.discarded == 2
        assert result.waiting_on_labeling == 0
        assert db.query(RawActivityEvent).count() == 0
        assert db.query(Activity).count() == 0

    def test_waiting_events_released_when_labeling_fails(self, db, user):
        upsert_label(db, CONTENT, "queued", now_ms=T)
        _event(db, "start", T)
        _event(db, "end", T + 5 * MINUTE)
        process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        # Parked events are not picked up again while the label is pending
        assert process_batch(db, limit=100, now_ms=T + 11 * MINUTE).processed == 0

        upsert_label(db, CONTENT, "failed", now_ms=T + 12 * MINUTE)
        assert db.query(RawActivityEvent).filter(RawActivityEvent.is_waiting_on_labeling.is_(True)).count() == 0
        result = process_batch(db, limit=100, now_ms=T + 13 * MINUTE)

        assert result.discarded == 2
        assert db.query(RawActivityEvent).count() == 0

    def test_waiting_events_do_not_block_other_users(self, db, user, japanese_label):
        create_user(db, "learner-2", "ja", now_ms=T - DAY_MS)
        upsert_label(db, "website:pending.example", "queued", now_ms=T)
        for i, kind in enumerate(["start", "end", "start", "end"]):
            _event(db, kind, T + i * MINUTE, content_key="website:pending.example")
        _event(db, "start", T + 10 * MINUTE, user_id="learner-2")
        _event(db, "end", T + 15 * MINUTE, user_id="learner-2")

        first = process_batch(db, limit=4, now_ms=T + 30 * MINUTE)
        second = process_batch(db, limit=4, now_ms=T + 31 * MINUTE)

        assert first.waiting_on_labeling == 4
        assert second.processed == 2
        assert second.completed_activities == 1
        assert db.query(Activity).filter(Activity.user_id == "learner-2").one().state == COMPLETED

    def test_backlog_larger_than_limit_drains(self, db, user, japanese_label):
        for i in range(3):
            _event(db, "start", T + i * 10 * MINUTE)
            _event(db, "end", T + i * 10 * MINUTE + 5 * MINUTE)

        completed = sum(
            process_batch(db, limit=2, now_ms=T + 60 * MINUTE).completed_activities
            for _ in range(3)
        )

        assert completed == 3
        assert db.query(RawActivityEvent).count() == 0
        assert db.query(ExperienceLedgerEntry).count() == 3

    def test_other_language_is_discarded(self, db, user):
        upsert_label(db, CONTENT, "completed", language_code="fr", now_ms=T)
        _event(db, "start", T)
        _event(db, "end", T + 5 * MINUTE)

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.discarded == 2
        assert db.query(Activity).count() == 0
        assert db.query(RawActivityEvent).count() == 0
        assert get_profile(db, "learner-1", "ja").total_experience == 0

    def test_other_language_marks_in_progress_deleted(self, db, user):
        upsert_label(db, CONTENT, "processing", now_ms=T)
        _event(db, "heartbeat", T)
        process_batch(db, limit=100, now_ms=T + 30 * SECOND)
        assert db.query(Activity).one().state == IN_PROGRESS

        upsert_label(db, CONTENT, "completed", language_code="fr", now_ms=T + MINUTE)
        process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert db.query(Activity).one().state == DELETED
        assert db.query(RawActivityEvent).count() == 0

    def test_user_without_target_language_discards(self, db, japanese_label):
        create_user(db, "no-language", now_ms=T - DAY_MS)
        _event(db, "start", T, user_id="no-language")
        _event(db, "end", T + MINUTE, user_id="no-language")

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.discarded == 2
        assert db.query(RawActivityEvent).count() == 0

    def test_unknown_user_discards(self, db, japanese_label):
        _event(db, "start", T, user_id="ghost")
        _event(db, "end", T + MINUTE, user_id="ghost")

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.discarded == 2
        assert db.query(Activity).count() == 0

    def test_orphans_deleted(self, db, user, japanese_label):
        _event(db, "pause", T)

        result = process_batch(db, limit=100, now_ms=T + 10 * MINUTE)

        assert result.discarded == 1
        assert db.query(RawActivityEvent).count() == 0

    def test_replay_does_not_double_credit(self, db, user, japanese_label):
        _event(db, "start", T)
        _event(db, "end", T + 30 * MINUTE)

        process_batch(db, limit=100, now_ms=T + 31 * MINUTE)
        again = process_batch(db, limit=100, now_ms=T + 32 * MINUTE)

        assert again.processed == 0
        assert db.query(ExperienceLedgerEntry).count() == 1


class TestSweepStaleActivities:

    def _in_progress(self, db, duration_ms, updated_at):
        profile = get_profile(db, "learner-1", "ja")
        activity = Activity(
            user_id="learner-1",
            target_language_profile_id=profile.id,
            content_key=CONTENT,
            state=IN_PROGRESS,
            duration_ms=duration_ms,
            source="youtube",
            is_manually_tracked=False,
            occurred_at=T,
            last_event_at=T + duration_ms,
            created_at=T,
            updated_at=updated_at,
        )
        db.add(activity)
        db.commit()
        return activity

    def test_long_enough_activity_completed(self, db, user, japanese_label):
        activity = self._in_progress(db, 10 * MINUTE, updated_at=T + 10 * MINUTE)
        _event(db, "heartbeat", T)
        _event(db, "heartbeat", T + 10 * MINUTE)

        result = sweep_stale_activities(db, now_ms=T + 20 * MINUTE)

        assert result.completed == 1
        db.refresh(activity)
        assert activity.state == COMPLETED
        assert get_profile(db, "learner-1", "ja").total_experience > 0
        assert db.query(RawActivityEvent).count() == 0

    def test_short_activity_dropped(self, db, user, japanese_label):
        activity = self._in_progress(db, 10 * SECOND, updated_at=T + 10 * SECOND)

        result = sweep_stale_activities(db, now_ms=T + 20 * MINUTE)

        assert result.discarded == 1
        db.refresh(activity)
        assert activity.state == DELETED
        assert db.query(ExperienceLedgerEntry).count() == 0

    def test_recent_activity_left_alone(self, db, user, japanese_label):
        activity = self._in_progress(db, 10 * MINUTE, updated_at=T + 10 * MINUTE)

        result = sweep_stale_activities(db, now_ms=T + 11 * MINUTE)

        assert result.completed == 0
        db.refresh(activity)
        assert activity.state == IN_PROGRESS

    def test_swept_events_not_credited_again(self, db, user, japanese_label):
        self._in_progress(db, 10 * MINUTE, updated_at=T + 10 * MINUTE)
        _event(db, "heartbeat", T)
        _event(db, "heartbeat", T + 10 * MINUTE)

        sweep_stale_activities(db, now_ms=T + 20 * MINUTE)
        result = process_batch(db, limit=100, now_ms=T + 21 * MINUTE)

        assert result.processed == 0
        assert db.query(ExperienceLedgerEntry).count() == 1


class TestConcurrentResolution:
    """The batch job and the staleness sweep racing for one in-progress activity."""

    def _watch_ten_minutes(self, db):
        for i in range(11):
            _event(db, "heartbeat", T + i * MINUTE)
        process_batch(db, limit=100, now_ms=T + 10 * MINUTE + 30 * SECOND)
        assert db.query(Activity).one().state == IN_PROGRESS

    def _run_first(self, monkeypatch, session_factory, job):
        """Run ``job`` in its own session just before the next label lookup."""
        real_get_label = sessionizer.get_label
        ran = []

        def get_label_after_other_worker(session, content_key):
            if not ran:
                ran.append(True)
                other = session_factory()
                try:
                    job(other)
                finally:
                    other.close()
            return real_get_label(session, content_key)

        monkeypatch.setattr(sessionizer, "get_label", get_label_after_other_worker)

    def _assert_credited_once(self, db):
        assert db.query(ExperienceLedgerEntry).count() == 1
        assert db.query(Activity).count() == 1
        assert db.query(Activity).one().state == COMPLETED
        assert get_profile(db, "learner-1", "ja").total_duration_ms == 10 * MINUTE
        assert db.query(RawActivityEvent).count() == 0

    def test_sweep_skips_activity_the_batch_completed(self, db, session_factory, user,
                                                      japanese_label, monkeypatch):
        self._watch_ten_minutes(db)
        self._run_first(
            monkeypatch, session_factory,
            lambda other: process_batch(other, limit=100, now_ms=T + 20 * MINUTE),
        )

        result = sweep_stale_activities(db, now_ms=T + 20 * MINUTE)

        assert result.completed == 0
        self._assert_credited_once(db)

    def test_batch_skips_window_the_sweep_completed(self, db, session_factory, user,
                                                    japanese_label, monkeypatch):
        self._watch_ten_minutes(db)
        self._run_first(
            monkeypatch, session_factory,
            lambda other: sweep_stale_activities(other, now_ms=T + 20 * MINUTE),
        )

        result = process_batch(db, limit=100, now_ms=T + 20 * MINUTE)

        assert result.completed_activities == 0
        assert result.created_activities == 0
        self._assert_credited_once(db)

"""SQLAlchemy ORM models.

Timestamps are integer milliseconds since the Unix epoch (UTC) so that day
buckets can be computed exactly with integer arithmetic.
"""
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from .db import Base

ACTIVITY_TYPES = ("start", "pause", "end", "heartbeat")

IN_PROGRESS = "in-progress"
COMPLETED = "completed"
DELETED = "deleted"


class User(Base):
    """A learner and the denormalized streak counters for them."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, index=True, nullable=False)
    current_target_language_id = Column(Integer, nullable=True)
    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    last_streak_credit_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)


class TargetLanguageProfile(Base):
    """Per-language progress totals for a user."""
    __tablename__ = "target_language_profiles"
    __table_args__ = (
        UniqueConstraint("user_id", "language_code", name="uq_profile_user_language"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    language_code = Column(String, nullable=False)
    # Must always equal the latest experience_ledger.running_total_after
    total_experience = Column(Integer, nullable=False, default=0)
    total_duration_ms = Column(BigInteger, nullable=False, default=0)


class RawActivityEvent(Base):
    """A single playback/visit ping.  Consumed and deleted by the sessionizer."""
    __tablename__ = "raw_activity_events"
    __table_args__ = (
        Index("ix_raw_activity_events_user_content", "user_id", "content_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    content_key = Column(String, nullable=False)
    activity_type = Column(String, nullable=False)
    occurred_at = Column(BigInteger, index=True, nullable=False)
    source = Column(String, nullable=False)
    url = Column(Text, nullable=True)
    is_waiting_on_labeling = Column(Boolean, nullable=False, default=False)
    received_at = Column(BigInteger, nullable=False)


class Activity(Base):
    """A reconstructed (or manually reported) study session."""
    __tablename__ = "activities"
    __table_args__ = (
        Index("ix_activities_user_occurred", "user_id", "occurred_at"),
        # At most one in-progress activity per (user, content_key)
        Index(
            "uq_activities_user_content_in_progress",
            "user_id",
            "content_key",
            unique=True,
            sqlite_where=text("state = 'in-progress'"),
            postgresql_where=text("state = 'in-progress'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    target_language_profile_id = Column(Integer, index=True, nullable=False)
    content_key = Column(String, nullable=True)
    state = Column(String, nullable=False)  # "in-progress", "completed" or "deleted"
    title = Column(String, nullable=True)
    language_code = Column(String, nullable=True)
    duration_ms = Column(BigInteger, nullable=False, default=0)
    source = Column(String, nullable=False)
    is_manually_tracked = Column(Boolean, nullable=False, default=False)
    occurred_at = Column(BigInteger, nullable=False)  # session start
    last_event_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class StreakDay(Base):
    """Per-user, per-UTC-day streak state and aggregates."""
    __tablename__ = "streak_days"
    __table_args__ = (
        UniqueConstraint("user_id", "day_start", name="uq_streak_days_user_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    day_start = Column(BigInteger, nullable=False)
    tracked_duration_ms = Column(BigInteger, nullable=False, default=0)
    xp_gained = Column(Integer, nullable=False, default=0)
    credited = Column(Boolean, nullable=False, default=False)
    credit_kind = Column(String, nullable=True)  # "activity" or "vacation"
    streak_length = Column(Integer, nullable=False, default=0)
    last_event_at = Column(BigInteger, nullable=True)
    vacation_applied_at = Column(BigInteger, nullable=True)


class StreakLedgerEntry(Base):
    """Append-only audit of streak crediting decisions and day XP deltas."""
    __tablename__ = "streak_ledger"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    day_start = Column(BigInteger, nullable=False)
    occurred_at = Column(BigInteger, nullable=False)
    reason = Column(String, nullable=False)  # credit_activity, credit_vacation, xp_delta
    streak_length_after = Column(Integer, nullable=True)
    xp_delta = Column(Integer, nullable=True)
    source = Column(String, nullable=False)  # "user" or "system"
    note = Column(Text, nullable=True)


class VacationLedgerEntry(Base):
    """Append-only record of vacation-credit grants and uses."""
    __tablename__ = "vacation_ledger"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    occurred_at = Column(BigInteger, nullable=False)
    reason = Column(String, nullable=False)  # "grant" or "use"
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    covered_day_start = Column(BigInteger, nullable=True)
    source = Column(String, nullable=False)


class ExperienceLedgerEntry(Base):
    """Append-only XP ledger; the system of record for experience."""
    __tablename__ = "experience_ledger"
    __table_args__ = (
        Index("ix_experience_ledger_profile", "target_language_profile_id", "id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    target_language_profile_id = Column(Integer, nullable=False)
    activity_id = Column(Integer, index=True, nullable=True)
    base_experience = Column(Integer, nullable=False)
    multipliers_json = Column(Text, nullable=True)  # JSON array of {type, value}
    delta_experience = Column(Integer, nullable=False)
    running_total_after = Column(Integer, nullable=False)
    occurred_at = Column(BigInteger, nullable=False)
    previous_level = Column(Integer, nullable=False)
    new_level = Column(Integer, nullable=False)
    levels_gained = Column(Integer, nullable=False)
    remainder_towards_next_level = Column(Integer, nullable=False)
    next_level_cost = Column(Integer, nullable=False)
    note = Column(Text, nullable=True)


class ContentLabel(Base):
    """Language/media annotation of a content key, written by the labeling engine."""
    __tablename__ = "content_labels"

    id = Column(Integer, primary_key=True, index=True)
    content_key = Column(String, unique=True, index=True, nullable=False)
    stage = Column(String, nullable=False)  # queued, processing, completed, failed
    language_code = Column(String, nullable=True)
    media_type = Column(String, nullable=True)
    title = Column(String, nullable=True)
    content_source = Column(String, nullable=True)
    content_url = Column(Text, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

"""Pydantic schemas for request/response validation."""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ActivityEventIn(BaseModel):
    """A playback/visit ping from the browser companion."""
    user_id: str
    content_key: str = Field(..., min_length=1)
    activity_type: Literal["start", "pause", "end", "heartbeat"]
    occurred_at: Optional[int] = Field(None, ge=0)  # epoch ms; defaults to receipt time
    source: str
    url: Optional[str] = None


class StoredResponse(BaseModel):
    """Response for event storage."""
    stored: bool
    label_stage: str


class ContentLabelIn(BaseModel):
    stage: Literal["queued", "processing", "completed", "failed"]
    language_code: Optional[str] = None
    media_type: Optional[str] = None
    title: Optional[str] = None
    content_source: Optional[str] = None
    content_url: Optional[str] = None


class ContentLabelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    content_key: str
    stage: str
    language_code: Optional[str] = None
    media_type: Optional[str] = None
    title: Optional[str] = None
    content_source: Optional[str] = None
    content_url: Optional[str] = None
    updated_at: int


class CreateUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    language_code: Optional[str] = None


class TargetLanguageRequest(BaseModel):
    language_code: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    current_target_language_id: Optional[int] = None
    current_streak: int
    longest_streak: int
    created_at: int


class VacationGrantRequest(BaseModel):
    source: str = "admin"


class VacationGrantResponse(BaseModel):
    user_id: str
    vacation_balance: int


class ManualActivityRequest(BaseModel):
    """Self-reported study time."""
    title: Optional[str] = None
    duration_ms: int = Field(..., gt=0, le=24 * 60 * 60 * 1000)
    occurred_at: Optional[int] = Field(None, ge=0)


class ActivityResponse(BaseModel):
    """Response schema for an activity."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    content_key: Optional[str] = None
    state: str
    title: Optional[str] = None
    language_code: Optional[str] = None
    duration_ms: int
    source: str
    is_manually_tracked: bool
    occurred_at: int
    last_event_at: Optional[int] = None


class ManualActivityResponse(BaseModel):
    activity: ActivityResponse
    xp_awarded: int
    current_streak: int


class DeleteActivityResponse(BaseModel):
    deleted: bool
    reversed_experience: int


class WeeklySourceBucket(BaseModel):
    day: str
    youtube: int
    spotify: int
    anki: int
    misc: int


class HeatmapResponse(BaseModel):
    start_day: int
    total_days: int
    values: List[int]
    minutes: List[int]
    vacation_flags: List[bool]
    current_streak: int
    longest_streak: int


class XpPoint(BaseModel):
    day_start: int
    xp: int


class XpTimeseriesResponse(BaseModel):
    range: str
    days: int
    start_day: int
    points: List[XpPoint]
    total_xp: int


class StreakStatusResponse(BaseModel):
    current_streak: int
    longest_streak: int
    last_streak_credit_at: Optional[int] = None
    vacation_balance: int
    vacation_cap: int
    vacation_capped: bool
    xp_per_vacation: int
    xp_towards_next_vacation: int
    percent_to_next_vacation: float
    streak_multiplier: float


class LevelProgressResponse(BaseModel):
    language_code: str
    total_experience: int
    total_duration_ms: int
    level: int
    experience_towards_next_level: int
    next_level_cost: int
    percent_to_next_level: float


class ExperienceEntryResponse(BaseModel):
    """Response schema for an experience ledger entry."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    activity_id: Optional[int] = None
    base_experience: int
    delta_experience: int
    running_total_after: int
    occurred_at: int
    previous_level: int
    new_level: int
    levels_gained: int
    remainder_towards_next_level: int
    next_level_cost: int
    note: Optional[str] = None


class BatchResultResponse(BaseModel):
    processed: int
    created_activities: int
    completed_activities: int
    waiting_on_labeling: int
    discarded: int


class SweepResultResponse(BaseModel):
    completed: int
    discarded: int


class NudgeResultResponse(BaseModel):
    bridged: int

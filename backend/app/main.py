"""FastAPI application for activity ingestion and progress tracking."""
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from .activities import add_manual_activity, delete_activity
from .db import ensure_schema, get_db
from .experience import TargetLanguageNotFound, ledger_history
from .labels import get_label, get_or_create_label, upsert_label
from .models import RawActivityEvent
from .projections import (
    heatmap,
    level_progress,
    recent_activities,
    streak_status,
    weekly_source_minutes,
    xp_timeseries,
)
from .scheduler import start_scheduler, stop_scheduler
from .schemas import (
    ActivityEventIn,
    ActivityResponse,
    BatchResultResponse,
    ContentLabelIn,
    ContentLabelResponse,
    CreateUserRequest,
    DeleteActivityResponse,
    ExperienceEntryResponse,
    HeatmapResponse,
    LevelProgressResponse,
    ManualActivityRequest,
    ManualActivityResponse,
    NudgeResultResponse,
    StoredResponse,
    StreakStatusResponse,
    SweepResultResponse,
    TargetLanguageRequest,
    UserResponse,
    VacationGrantRequest,
    VacationGrantResponse,
    WeeklySourceBucket,
    XpTimeseriesResponse,
)
from .sessionizer import process_batch, sweep_stale_activities
from .settings import (
    ADMIN_KEY,
    FUTURE_SKEW_MS,
    LOG_LEVEL,
    NUDGE_USER_LIMIT,
    SCHEDULER_ENABLED,
    SESSIONIZE_BATCH_LIMIT,
)
from .streaks import grant_vacation, nudge_all_users, vacation_balance
from .timeutils import now_ms
from .users import create_user, get_current_profile, get_user, set_target_language

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_schema()
    if SCHEDULER_ENABLED:
        start_scheduler()
    yield
    if SCHEDULER_ENABLED:
        stop_scheduler()


app = FastAPI(title="Language Progress Tracker API", version="0.1.0", lifespan=lifespan)

# CORS configuration
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS")
if _allowed_origins_env:
    allowed_origins = [origin.strip() for origin in _allowed_origins_env.split(",")]
else:
    allowed_origins = ["http://localhost:8501"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_admin(x_admin_key: str) -> None:
    if not ADMIN_KEY or x_admin_key != ADMIN_KEY:
        raise HTTPException(status_code=403, detail="Invalid or missing admin key")


def _get_user_or_404(db: Session, user_id: str):
    user = get_user(db, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/events", response_model=StoredResponse)
def ingest_event(event: ActivityEventIn, db: Session = Depends(get_db)):
    """Store a raw playback ping for the sessionizer."""
    user = _get_user_or_404(db, event.user_id)
    if get_current_profile(db, user) is None:
        raise HTTPException(status_code=409, detail="User has no target language")

    received_at = now_ms()
    occurred_at = event.occurred_at if event.occurred_at is not None else received_at
    # Client clocks may run ahead
    occurred_at = min(occurred_at, received_at + FUTURE_SKEW_MS)

    label = get_or_create_label(db, event.content_key, event.source, event.url, received_at)
    db.add(RawActivityEvent(
        user_id=event.user_id,
        content_key=event.content_key,
        activity_type=event.activity_type,
        occurred_at=occurred_at,
        source=event.source,
        url=event.url,
        is_waiting_on_labeling=False,
        received_at=received_at,
    ))
    db.commit()
    return {"stored": True, "label_stage": label.stage}


@app.get("/labels/{content_key}", response_model=ContentLabelResponse)
def read_label(content_key: str, db: Session = Depends(get_db)):
    label = get_label(db, content_key)
    if label is None:
        raise HTTPException(status_code=404, detail="No label for content key")
    return label


@app.put("/admin/labels/{content_key}", response_model=ContentLabelResponse)
def write_label(
    content_key: str,
    body: ContentLabelIn,
    db: Session = Depends(get_db),
    x_admin_key: str = Header(...),
):
    """Labeling-engine write-back of a content label."""
    _require_admin(x_admin_key)
    return upsert_label(db, content_key, **body.model_dump())


# Read surface

@app.get("/users/{user_id}/activities", response_model=List[ActivityResponse])
def list_activities(user_id: str, limit: int = 20, offset: int = 0, db: Session = Depends(get_db)):
    """Completed activities for a user, newest first."""
    if limit < 1 or limit > 200 or offset < 0:
        raise HTTPException(status_code=400, detail="limit must be 1-200 and offset >= 0")
    _get_user_or_404(db, user_id)
    return recent_activities(db, user_id, limit=limit, offset=offset)


@app.get("/users/{user_id}/activities/weekly-sources", response_model=List[WeeklySourceBucket])
def weekly_sources(user_id: str, db: Session = Depends(get_db)):
    _get_user_or_404(db, user_id)
    return weekly_source_minutes(db, user_id)


@app.get("/users/{user_id}/heatmap", response_model=HeatmapResponse)
def user_heatmap(user_id: str, days: int = 365, db: Session = Depends(get_db)):
    if days < 1 or days > 366:
        raise HTTPException(status_code=400, detail="days must be between 1 and 366")
    user = _get_user_or_404(db, user_id)
    return heatmap(db, user, days=days)


@app.get("/users/{user_id}/xp-timeseries", response_model=XpTimeseriesResponse)
def user_xp_timeseries(user_id: str, range: str = "7d", db: Session = Depends(get_db)):
    user = _get_user_or_404(db, user_id)
    try:
        return xp_timeseries(db, user, range_key=range)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/users/{user_id}/streak", response_model=StreakStatusResponse)
def user_streak(user_id: str, db: Session = Depends(get_db)):
    user = _get_user_or_404(db, user_id)
    return streak_status(db, user)


@app.get("/users/{user_id}/progress", response_model=LevelProgressResponse)
def user_progress(user_id: str, db: Session = Depends(get_db)):
    user = _get_user_or_404(db, user_id)
    progress = level_progress(db, user)
    if progress is None:
        raise HTTPException(status_code=409, detail="User has no target language")
    return progress


@app.get("/users/{user_id}/experience", response_model=List[ExperienceEntryResponse])
def user_experience(user_id: str, limit: int = 50, db: Session = Depends(get_db)):
    """Experience ledger history of the current target language, newest first."""
    user = _get_user_or_404(db, user_id)
    profile = get_current_profile(db, user)
    if profile is None:
        raise HTTPException(status_code=409, detail="User has no target language")
    return ledger_history(db, profile.id, limit=limit)


# Activity lifecycle

@app.post("/users/{user_id}/activities", response_model=ManualActivityResponse)
def create_manual_activity(user_id: str, body: ManualActivityRequest, db: Session = Depends(get_db)):
    """Record self-reported study time."""
    try:
        result = add_manual_activity(
            db, user_id, body.title, body.duration_ms, occurred_at=body.occurred_at,
        )
    except TargetLanguageNotFound:
        raise HTTPException(status_code=409, detail="User has no target language")
    except LookupError:
        raise HTTPException(status_code=404, detail="User not found")
    return ManualActivityResponse(
        activity=ActivityResponse.model_validate(result.activity),
        xp_awarded=result.xp_awarded,
        current_streak=result.streak.current_streak,
    )


@app.delete("/users/{user_id}/activities/{activity_id}", response_model=DeleteActivityResponse)
def remove_activity(user_id: str, activity_id: int, db: Session = Depends(get_db)):
    """Delete an activity and reverse the XP it earned."""
    result = delete_activity(db, user_id, activity_id)
    if not result.deleted:
        raise HTTPException(status_code=404, detail="Activity not found")
    return DeleteActivityResponse(deleted=True, reversed_experience=result.reversed_experience)


# Admin Endpoints

@app.post("/admin/users", response_model=UserResponse)
def admin_create_user(
    body: CreateUserRequest,
    db: Session = Depends(get_db),
    x_admin_key: str = Header(...),
):
    _require_admin(x_admin_key)
    try:
        return create_user(db, body.user_id, body.language_code)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.put("/admin/users/{user_id}/target-language", response_model=UserResponse)
def admin_set_target_language(
    user_id: str,
    body: TargetLanguageRequest,
    db: Session = Depends(get_db),
    x_admin_key: str = Header(...),
):
    """Switch the language a user is learning, creating its profile on first use."""
    _require_admin(x_admin_key)
    user = _get_user_or_404(db, user_id)
    set_target_language(db, user, body.language_code)
    db.commit()
    db.refresh(user)
    return user


@app.post("/admin/users/{user_id}/vacation-grants", response_model=VacationGrantResponse)
def admin_grant_vacation(
    user_id: str,
    body: VacationGrantRequest,
    db: Session = Depends(get_db),
    x_admin_key: str = Header(...),
):
    _require_admin(x_admin_key)
    user = _get_user_or_404(db, user_id)
    grant_vacation(db, user, source=body.source)
    db.commit()
    return VacationGrantResponse(user_id=user_id, vacation_balance=vacation_balance(db, user))


@app.post("/admin/jobs/sessionize", response_model=BatchResultResponse)
def admin_run_sessionizer(
    limit: int = SESSIONIZE_BATCH_LIMIT,
    db: Session = Depends(get_db),
    x_admin_key: str = Header(...),
):
    _require_admin(x_admin_key)
    return asdict(process_batch(db, limit=limit))


@app.post("/admin/jobs/sweep-stale", response_model=SweepResultResponse)
def admin_run_sweep(db: Session = Depends(get_db), x_admin_key: str = Header(...)):
    _require_admin(x_admin_key)
    return asdict(sweep_stale_activities(db))


@app.post("/admin/jobs/nudge", response_model=NudgeResultResponse)
def admin_run_nudge(db: Session = Depends(get_db), x_admin_key: str = Header(...)):
    _require_admin(x_admin_key)
    return {"bridged": nudge_all_users(db, limit=NUDGE_USER_LIMIT)}

"""User and target-language profile lookups."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from .models import TargetLanguageProfile, User
from .timeutils import now_ms as _now_ms

logger = logging.getLogger(__name__)


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.user_id == user_id).first()


def get_profile(db: Session, user_id: str, language_code: str) -> Optional[TargetLanguageProfile]:
    return db.query(TargetLanguageProfile).filter(
        TargetLanguageProfile.user_id == user_id,
        TargetLanguageProfile.language_code == language_code,
    ).first()


def get_current_profile(db: Session, user: User) -> Optional[TargetLanguageProfile]:
    """The profile of the language the user is currently learning, if any."""
    if user.current_target_language_id is None:
        return None
    return db.get(TargetLanguageProfile, user.current_target_language_id)


def create_user(db: Session, user_id: str, language_code: Optional[str] = None,
                now_ms: Optional[int] = None) -> User:
    """Register a user, optionally with a first target language.

    Raises ValueError if the user already exists.
    """
    if get_user(db, user_id) is not None:
        raise ValueError(f"User {user_id!r} already exists")

    user = User(
        user_id=user_id,
        current_streak=0,
        longest_streak=0,
        created_at=now_ms if now_ms is not None else _now_ms(),
    )
    db.add(user)
    db.flush()

    if language_code:
        set_target_language(db, user, language_code)

    db.commit()
    db.refresh(user)
    logger.info("Created user %s (target language %s)", user_id, language_code)
    return user


def set_target_language(db: Session, user: User, language_code: str) -> TargetLanguageProfile:
    """Point the user at ``language_code``, creating the profile on first use.

    Existing profiles keep their totals, so switching back and forth between
    languages never loses progress.
    """
    profile = get_profile(db, user.user_id, language_code)
    if profile is None:
        profile = TargetLanguageProfile(
            user_id=user.user_id,
            language_code=language_code,
            total_experience=0,
            total_duration_ms=0,
        )
        db.add(profile)
        db.flush()
    user.current_target_language_id = profile.id
    db.flush()
    return profile

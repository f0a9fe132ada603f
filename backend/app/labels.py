"""Content labels: the sessionizer's view of the external labeling engine.

The labeling engine owns these rows; this service only enqueues a ``queued``
label the first time a content key is seen and reads ``stage`` and
``language_code`` back.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from .models import ContentLabel, RawActivityEvent
from .timeutils import now_ms as _now_ms

logger = logging.getLogger(__name__)

LABEL_STAGES = ("queued", "processing", "completed", "failed")
LABEL_PENDING = ("queued", "processing")
LABEL_FAILED = "failed"


def get_label(db: Session, content_key: str) -> Optional[ContentLabel]:
    return db.query(ContentLabel).filter(ContentLabel.content_key == content_key).first()


def get_or_create_label(db: Session, content_key: str, source: Optional[str] = None,
                        url: Optional[str] = None, now_ms: Optional[int] = None) -> ContentLabel:
    """Return the label for ``content_key``, enqueueing a new one if missing.  Flushes."""
    label = get_label(db, content_key)
    if label is not None:
        return label
    now = now_ms if now_ms is not None else _now_ms()
    label = ContentLabel(
        content_key=content_key,
        stage="queued",
        content_source=source,
        content_url=url,
        created_at=now,
        updated_at=now,
    )
    db.add(label)
    db.flush()
    logger.info("Queued content label for %s", content_key)
    return label


def is_label_ready(label: Optional[ContentLabel]) -> bool:
    """A label can drive crediting once it is completed and names a language."""
    return label is not None and label.stage == "completed" and bool(label.language_code)


def upsert_label(
    db: Session,
    content_key: str,
    stage: str,
    language_code: Optional[str] = None,
    media_type: Optional[str] = None,
    title: Optional[str] = None,
    content_source: Optional[str] = None,
    content_url: Optional[str] = None,
    now_ms: Optional[int] = None,
) -> ContentLabel:
    """Labeling-engine write-back.  Commits.

    Once the label leaves the pending stages, events parked as waiting on it
    are handed back to the sessionizer.  Raises ValueError for an unknown stage.
    """
    if stage not in LABEL_STAGES:
        raise ValueError(f"Unknown label stage {stage!r}")

    now = now_ms if now_ms is not None else _now_ms()
    label = get_label(db, content_key)
    if label is None:
        label = ContentLabel(content_key=content_key, created_at=now)
        db.add(label)

    label.stage = stage
    label.language_code = language_code
    label.media_type = media_type
    if title is not None:
        label.title = title
    if content_source is not None:
        label.content_source = content_source
    if content_url is not None:
        label.content_url = content_url
    label.updated_at = now

    released = 0
    if stage not in LABEL_PENDING:
        released = release_waiting_events(db, content_key)

    db.commit()
    db.refresh(label)
    logger.info("Label %s -> %s (%s)", content_key, stage, language_code)
    if released:
        logger.info("Released %d waiting events for %s", released, content_key)
    return label


def release_waiting_events(db: Session, content_key: str) -> int:
    """Clear the waiting flag on a content key's parked events.  Flushes."""
    released = db.query(RawActivityEvent).filter(
        RawActivityEvent.content_key == content_key,
        RawActivityEvent.is_waiting_on_labeling.is_(True),
    ).update({"is_waiting_on_labeling": False}, synchronize_session=False)
    db.flush()
    return released

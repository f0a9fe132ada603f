"""Millisecond UTC clock helpers shared by the ledgers and the sessionizer."""
from datetime import datetime, timezone

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds (UTC)."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def day_start_of(timestamp_ms: int) -> int:
    """Floor a timestamp to the start of its UTC day."""
    return (timestamp_ms // DAY_MS) * DAY_MS


def to_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


def to_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)

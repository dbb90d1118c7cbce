from datetime import datetime, timedelta, timezone
from typing import Any

# India Standard Time (UTC+5:30)
INDIA_TIMEZONE = timezone(timedelta(hours=5, minutes=30))


def now() -> datetime:
    """Current IST time without tzinfo (naive). Every timestamp in the project uses this."""
    return datetime.now(INDIA_TIMEZONE).replace(tzinfo=None)


def now_tzinfo() -> datetime:
    return datetime.now(INDIA_TIMEZONE)


def to_india_naive(dt: datetime | None) -> datetime | None:
    """Normalize a datetime to naive IST.
    - None stays None
    - aware datetimes are converted to UTC+5:30 and stripped
    - naive datetimes are assumed to already be IST
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(INDIA_TIMEZONE).replace(tzinfo=None)
    return dt


def isoformat(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.replace(tzinfo=INDIA_TIMEZONE).isoformat()


def serialize(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return isoformat(obj)
    if isinstance(obj, dict):
        return {k: serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [serialize(v) for v in obj]
    return obj


def month_start(dt: datetime) -> datetime:
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

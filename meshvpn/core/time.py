from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes even for DateTime(timezone=True)
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def seconds_since(then: datetime | None, now: datetime) -> float | None:
    then = ensure_aware_utc(then)
    if then is None:
        return None
    return (now - then).total_seconds()


def within(then: datetime | None, now: datetime, window: timedelta) -> bool:
    elapsed = seconds_since(then, now)
    return elapsed is not None and elapsed <= window.total_seconds()

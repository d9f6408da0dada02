"""
UTC clock helpers.

Every lease comparison goes through a single UTC-normalized clock. Stores
take a ``Clock`` callable so tests can move time forward without sleeping.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional


Clock = Callable[[], datetime]

_DB_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are treated as UTC, which is how both backends persist them.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_text(value: Optional[datetime]) -> Optional[str]:
    """
    Format a datetime as fixed-width UTC text.

    The fixed width keeps lexical order equal to chronological order, so
    SQLite can compare lease timestamps as plain strings.
    """
    if value is None:
        return None
    return ensure_utc(value).strftime(_DB_FORMAT)


def from_db_text(value: Optional[str]) -> Optional[datetime]:
    """Parse text written by ``to_db_text``."""
    if value is None:
        return None
    return datetime.strptime(value, _DB_FORMAT).replace(tzinfo=timezone.utc)


class ManualClock:
    """
    Clock that only moves when told to.

    Example:
        >>> clock = ManualClock()
        >>> store = SqliteMessageBox(db_path, clock=clock)
        >>> clock.advance(seconds=301)  # every 5 minute lease is now expired
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else utc_now()
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime:
        """Move the clock forward and return the new time."""
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now

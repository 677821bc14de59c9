from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

# A clock is any zero-argument callable returning an aware UTC datetime.
# Services accept one so tests can simulate the passage of time.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive values are taken to be UTC already (SQLite drops tzinfo on
    round-trip); aware values are converted, so the same instant always
    stores and compares as the same wall time.
    """

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict

DEFAULT_LOCK_STALE_AFTER = timedelta(minutes=30)


class DocumentLock(BaseModel):
    """Advisory edit lock held on a draft document.

    A lock never expires on its own and is never renewed: it becomes *stale*
    once its age since the last acquire exceeds ``stale_after``, after which
    any other actor may take it over. All lock checks go through
    :meth:`blocks` so the staleness rule exists in exactly one place.
    """

    model_config = ConfigDict(frozen=True)

    locked_by: str
    locked_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.locked_at

    def is_stale(self, now: datetime, stale_after: timedelta = DEFAULT_LOCK_STALE_AFTER) -> bool:
        return self.age(now) > stale_after

    def is_held_by(self, actor: str) -> bool:
        return self.locked_by == actor

    def blocks(self, actor: str, now: datetime, stale_after: timedelta = DEFAULT_LOCK_STALE_AFTER) -> bool:
        """True when ``actor`` may not write because someone else holds a live lock."""

        return not self.is_held_by(actor) and not self.is_stale(now, stale_after)

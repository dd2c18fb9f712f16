"""Duplicate guard for watch creation.

Suppresses accidental double submissions: a second watch on the same user in
the same guild is refused while an active (Pending or Voting) watch exists
whose scheduled time is within a small window of the requested one. Watches
on the same user at clearly different times are allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ratwatch.models.watch import Watch

if TYPE_CHECKING:
    from ratwatch.db.repository import WatchStore

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_WINDOW = timedelta(minutes=5)


async def find_duplicate(
    store: WatchStore,
    guild_id: int,
    accused_user_id: int,
    scheduled_at: datetime,
    window: timedelta = DEFAULT_DUPLICATE_WINDOW,
) -> Watch | None:
    """Return the active watch that a new request at *scheduled_at* would duplicate.

    The window is inclusive on both ends: a request exactly ``window`` away
    from an existing watch is still a duplicate.
    """
    row = await store.find_duplicate(guild_id, accused_user_id, scheduled_at, window)
    if row is None:
        return None
    existing = Watch.model_validate(row)
    logger.info(
        "duplicate_watch_found guild=%s accused=%s existing=%s",
        guild_id,
        accused_user_id,
        existing.id,
    )
    return existing

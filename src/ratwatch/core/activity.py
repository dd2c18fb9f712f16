"""Display-only projection of a watch's most recent activity time.

Used to sort watch lists. Derived from the persisted timestamps on every
read, never stored.
"""

from __future__ import annotations

from datetime import datetime

from ratwatch.models.watch import Watch, WatchStatus


def last_activity_at(watch: Watch) -> datetime:
    """The timestamp of the last thing that happened to *watch*.

    Falls back along the chain when the status-specific field is missing.
    """
    status = WatchStatus(watch.status)
    if status == WatchStatus.CLEARED_EARLY:
        chain = (watch.cleared_at, watch.scheduled_at)
    elif status in (WatchStatus.GUILTY, WatchStatus.NOT_GUILTY):
        chain = (watch.voting_ended_at, watch.voting_started_at, watch.scheduled_at)
    elif status == WatchStatus.VOTING:
        chain = (watch.voting_started_at, watch.scheduled_at)
    elif status == WatchStatus.CANCELLED:
        chain = (watch.voting_started_at, watch.created_at)
    else:
        chain = (watch.scheduled_at,)

    for instant in chain:
        if instant is not None:
            return instant
    return watch.created_at


def sort_by_activity(watches: list[Watch]) -> list[Watch]:
    """Most recently active first."""
    return sorted(watches, key=last_activity_at, reverse=True)

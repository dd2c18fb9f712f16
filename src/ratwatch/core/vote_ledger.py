"""Vote ledger: one ballot per (watch, voter), and the verdict rule.

Votes are written through ``WatchStore.upsert_vote``, a single conditional
statement that only lands while the watch is still Voting and before its
voting window closes. A later ballot from the same voter replaces the earlier
one. Tallies ignore votes on cancelled watches.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from ratwatch.models.watch import VoteTally, WatchStatus

if TYPE_CHECKING:
    from ratwatch.db.repository import WatchStore

logger = logging.getLogger(__name__)


def decide_verdict(tally: VoteTally) -> WatchStatus:
    """Guilty only on a strict guilty majority.

    A tie or an empty ballot box is Not Guilty.
    """
    if tally.guilty_count > tally.not_guilty_count:
        return WatchStatus.GUILTY
    return WatchStatus.NOT_GUILTY


async def cast_vote(
    store: WatchStore,
    watch_id: str,
    voter_user_id: int,
    is_guilty_vote: bool,
    now: datetime,
) -> bool:
    """Record or overwrite a ballot. Returns False if the ballot box is closed."""
    accepted = await store.upsert_vote(watch_id, voter_user_id, is_guilty_vote, now)
    if accepted:
        logger.info(
            "vote_recorded watch=%s voter=%s guilty=%s",
            watch_id,
            voter_user_id,
            is_guilty_vote,
        )
    else:
        logger.info("vote_rejected watch=%s voter=%s reason=closed", watch_id, voter_user_id)
    return accepted


async def tally(store: WatchStore, watch_id: str) -> VoteTally:
    guilty, not_guilty = await store.tally(watch_id)
    return VoteTally(watch_id=watch_id, guilty_count=guilty, not_guilty_count=not_guilty)

"""Execution of transition side effects after the transition is committed.

Everything here is safe to run more than once for the same watch: the guilty
record is keyed on the watch id, and notifications describe a persisted
state rather than a delta. That is what lets ``WatchService.replay_side_effects``
re-derive and re-issue effects after a crash.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ratwatch.core.notifier import NotificationKind, Notifier, WatchNotification
from ratwatch.core.state_machine import SideEffect
from ratwatch.db.engine import StorageUnavailableError, get_session
from ratwatch.db.repository import WatchStore
from ratwatch.models.watch import VoteTally, Watch

logger = logging.getLogger(__name__)

_NOTIFICATION_FOR: dict[SideEffect, NotificationKind] = {
    SideEffect.VOTING_OPENED: NotificationKind.VOTING_OPENED,
    SideEffect.VERDICT_ANNOUNCED: NotificationKind.VERDICT_ANNOUNCED,
    SideEffect.ACCUSED_NOTIFIED: NotificationKind.ACCUSED_NOTIFIED,
    SideEffect.CHECKED_IN: NotificationKind.CHECKED_IN,
    SideEffect.CANCELLED: NotificationKind.CANCELLED,
}


async def deliver_side_effects(
    engine: AsyncEngine,
    notifier: Notifier | None,
    watch: Watch,
    effects: tuple[SideEffect, ...],
    tally: VoteTally | None = None,
) -> None:
    """Run *effects* for a watch whose transition has already been persisted.

    Failures are logged and swallowed: a transition is never rolled back
    because a side effect could not be delivered.
    """
    for effect in effects:
        if effect == SideEffect.GUILTY_RECORDED:
            await _record_guilty(engine, watch, tally)
            continue

        if notifier is None:
            continue
        notification = WatchNotification(
            kind=_NOTIFICATION_FOR[effect],
            watch=watch,
            tally=tally,
        )
        try:
            await notifier.notify(notification)
        except Exception:  # Notifier is an external collaborator; its failure must not propagate
            logger.warning(
                "notification_failed kind=%s watch=%s",
                notification.kind.value,
                watch.id,
                exc_info=True,
            )


async def _record_guilty(engine: AsyncEngine, watch: Watch, tally: VoteTally | None) -> None:
    guilty = tally.guilty_count if tally else 0
    not_guilty = tally.not_guilty_count if tally else 0
    try:
        async with get_session(engine) as session:
            created = await WatchStore(session).record_verdict(
                watch_id=watch.id,
                guild_id=watch.guild_id,
                user_id=watch.accused_user_id,
                guilty_votes=guilty,
                not_guilty_votes=not_guilty,
                recorded_at=watch.voting_ended_at or watch.scheduled_at,
                original_message_link=watch.original_message_link,
            )
    except (StorageUnavailableError, SQLAlchemyError):
        logger.exception("guilty_record_failed watch=%s", watch.id)
        return
    if created:
        logger.info(
            "guilty_recorded watch=%s guild=%s user=%s guilty=%d not_guilty=%d",
            watch.id,
            watch.guild_id,
            watch.accused_user_id,
            guilty,
            not_guilty,
        )

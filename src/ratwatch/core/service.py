"""Watch service: the entry point command handlers and the API call.

Each operation reads the watch, asks the state machine what should happen,
persists the result with a conditional update, and only then runs side
effects. Expected failures come back as ``WatchOutcome`` errors; only
storage failures raise (``StorageUnavailableError``).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from ratwatch.config import Settings
from ratwatch.core import vote_ledger
from ratwatch.core.activity import sort_by_activity
from ratwatch.core.clock import Clock, SystemClock
from ratwatch.core.duplicate_guard import find_duplicate
from ratwatch.core.notifier import Notifier
from ratwatch.core.schedule_times import is_valid_timezone, parse_schedule_time
from ratwatch.core.side_effects import deliver_side_effects
from ratwatch.core.state_machine import (
    Rejection,
    RejectionReason,
    Transition,
    WatchEvent,
    cancel,
    check_in,
    derive_side_effects,
    transition,
    vote_cast,
)
from ratwatch.db.engine import get_session
from ratwatch.db.repository import WatchStore
from ratwatch.models.outcomes import WatchErrorKind, WatchOutcome
from ratwatch.models.watch import (
    GuildWatchSettings,
    RatRecord,
    VoteTally,
    Watch,
    WatchStatus,
)

logger = logging.getLogger(__name__)

CUSTOM_MESSAGE_MAX_LENGTH = 200

# A lost conditional update is re-evaluated once against the fresh row, so the
# caller gets the real reason (e.g. "voting already opened") instead of a
# generic conflict.
_MAX_ATTEMPTS = 2


def _error_kind(reason: RejectionReason) -> WatchErrorKind:
    if reason == RejectionReason.WRONG_USER:
        return "wrong_user"
    return "invalid_state"


def _apply(watch: Watch, result: Transition) -> Watch:
    return watch.model_copy(update={"status": result.to_status, **result.fields})


class WatchService:
    """Create, check in on, vote on, cancel and query watches."""

    def __init__(
        self,
        engine: AsyncEngine,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.engine = engine
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.settings = settings or Settings()

    # --- Commands ---

    async def create_watch(
        self,
        guild_id: int,
        accused_user_id: int,
        initiator_user_id: int,
        scheduled_at: datetime,
        custom_message: str | None = None,
        *,
        channel_id: int = 0,
        original_message_id: int | None = None,
    ) -> WatchOutcome:
        """Start a watch, refusing near-duplicates of an active one."""
        now = self.clock.now()
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=UTC)
        message = (custom_message or "").strip()[:CUSTOM_MESSAGE_MAX_LENGTH] or None
        window = timedelta(minutes=self.settings.ratwatch_duplicate_window_minutes)

        async with get_session(self.engine) as session:
            store = WatchStore(session)
            guild = await store.get_guild_settings(
                guild_id, now=now, defaults=self.settings.guild_defaults()
            )
            if not guild.is_enabled:
                return WatchOutcome.failure(
                    "invalid_state", "Rat Watch is disabled in this server."
                )
            if scheduled_at <= now:
                return WatchOutcome.failure(
                    "invalid_schedule", "The scheduled time must be in the future."
                )
            if scheduled_at > now + timedelta(hours=guild.max_advance_hours):
                return WatchOutcome.failure(
                    "invalid_schedule",
                    f"Rat Watches can only be scheduled up to {guild.max_advance_hours} "
                    "hours in advance.",
                )

            # Serialize creations so two near-simultaneous requests can't both
            # miss each other in the duplicate check.
            await store.claim_guild(guild_id)
            existing = await find_duplicate(
                store, guild_id, accused_user_id, scheduled_at, window
            )
            if existing is not None:
                return WatchOutcome.failure(
                    "duplicate_watch",
                    "A Rat Watch on this user is already active around that time.",
                    watch=existing,
                    existing_watch_id=existing.id,
                )

            row = await store.create_watch(
                guild_id=guild_id,
                channel_id=channel_id,
                accused_user_id=accused_user_id,
                initiator_user_id=initiator_user_id,
                original_message_id=original_message_id,
                custom_message=message,
                scheduled_at=scheduled_at,
                created_at=now,
            )
            watch = Watch.model_validate(row)

        logger.info(
            "watch_created watch=%s guild=%s accused=%s initiator=%s scheduled_at=%s",
            watch.id,
            guild_id,
            accused_user_id,
            initiator_user_id,
            scheduled_at.isoformat(),
        )
        return WatchOutcome.success(watch)

    async def check_in(self, watch_id: str, requesting_user_id: int) -> WatchOutcome:
        """The accused clears a Pending watch before its deadline."""
        return await self._apply_event(watch_id, check_in(requesting_user_id))

    async def check_in_all(self, guild_id: int, user_id: int) -> int:
        """Check in on every Pending watch on *user_id* in a guild. Returns the count cleared."""
        watches = await self.get_active_watches_for_user(guild_id, user_id)
        cleared = 0
        for watch in watches:
            if watch.status != WatchStatus.PENDING:
                continue
            outcome = await self.check_in(watch.id, user_id)
            if outcome.ok:
                cleared += 1
        logger.info("watch_bulk_check_in guild=%s user=%s cleared=%d", guild_id, user_id, cleared)
        return cleared

    async def cancel(
        self,
        watch_id: str,
        requesting_user_id: int,
        *,
        is_moderator: bool = False,
    ) -> WatchOutcome:
        return await self._apply_event(
            watch_id, cancel(requesting_user_id, is_moderator=is_moderator)
        )

    async def cast_vote(
        self,
        watch_id: str,
        voter_user_id: int,
        is_guilty_vote: bool,
    ) -> WatchOutcome:
        """Record (or change) a ballot on a Voting watch."""
        now = self.clock.now()
        watch = await self._load(watch_id)
        if watch is None:
            return self._not_found(watch_id)

        result = transition(watch, vote_cast(voter_user_id), now)
        if isinstance(result, Rejection):
            return WatchOutcome.failure(_error_kind(result.reason), result.message, watch=watch)

        async with get_session(self.engine) as session:
            accepted = await vote_ledger.cast_vote(
                WatchStore(session), watch_id, voter_user_id, is_guilty_vote, now
            )
        if not accepted:
            return WatchOutcome.failure(
                "invalid_state", "Voting on this watch has closed.", watch=watch
            )
        return WatchOutcome.success(watch)

    async def _apply_event(self, watch_id: str, event: WatchEvent) -> WatchOutcome:
        now = self.clock.now()
        for _ in range(_MAX_ATTEMPTS):
            watch = await self._load(watch_id)
            if watch is None:
                return self._not_found(watch_id)

            result = transition(watch, event, now)
            if isinstance(result, Rejection):
                return WatchOutcome.failure(
                    _error_kind(result.reason), result.message, watch=watch
                )

            async with get_session(self.engine) as session:
                persisted = await WatchStore(session).conditional_update_status(
                    watch_id, result.from_status, result.to_status, **result.fields
                )
            if not persisted:
                logger.info(
                    "watch_transition_conflict watch=%s event=%s expected=%s",
                    watch_id,
                    event.kind.value,
                    result.from_status.value,
                )
                continue

            updated = _apply(watch, result)
            logger.info(
                "watch_transitioned watch=%s event=%s from=%s to=%s actor=%s",
                watch_id,
                event.kind.value,
                result.from_status.value,
                result.to_status.value,
                event.actor_user_id,
            )
            await deliver_side_effects(self.engine, self.notifier, updated, result.side_effects)
            return WatchOutcome.success(updated)

        return WatchOutcome.failure(
            "invalid_state", "This watch changed while you were acting on it. Try again."
        )

    async def replay_side_effects(self, watch_id: str) -> bool:
        """Re-issue the side effects implied by a watch's persisted status.

        Returns False if the watch does not exist.
        """
        watch = await self._load(watch_id)
        if watch is None:
            return False
        tally = await self.get_tally(watch_id)
        effects = derive_side_effects(watch.status)
        logger.info(
            "watch_side_effects_replayed watch=%s status=%s effects=%d",
            watch_id,
            watch.status.value,
            len(effects),
        )
        await deliver_side_effects(self.engine, self.notifier, watch, effects, tally)
        return True

    async def recover_side_effects(self) -> int:
        """Replay side effects that a shutdown or crash cut off.

        Covers open Voting watches whose voting prompt was never posted and
        Guilty watches with no guilty record. Returns how many were replayed.
        """
        async with get_session(self.engine) as session:
            store = WatchStore(session)
            unposted = await store.get_unannounced_voting_watches(self.clock.now())
            unrecorded = await store.get_guilty_watches_without_record()
        watch_ids = [row.id for row in unposted] + [row.id for row in unrecorded]
        for watch_id in watch_ids:
            await self.replay_side_effects(watch_id)
        if watch_ids:
            logger.info("watch_side_effects_recovered count=%d", len(watch_ids))
        return len(watch_ids)

    async def set_voting_message_id(self, watch_id: str, message_id: int) -> None:
        async with get_session(self.engine) as session:
            await WatchStore(session).set_voting_message_id(watch_id, message_id)

    # --- Queries ---

    async def get(self, watch_id: str) -> WatchOutcome:
        watch = await self._load(watch_id)
        if watch is None:
            return self._not_found(watch_id)
        return WatchOutcome.success(watch)

    async def get_tally(self, watch_id: str) -> VoteTally:
        async with get_session(self.engine) as session:
            return await vote_ledger.tally(WatchStore(session), watch_id)

    async def list_for_guild(
        self,
        guild_id: int,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[Watch], int]:
        async with get_session(self.engine) as session:
            rows, total = await WatchStore(session).get_watches_for_guild(
                guild_id, page=page, page_size=page_size
            )
            return [Watch.model_validate(r) for r in rows], total

    async def get_active_watches_for_user(self, guild_id: int, user_id: int) -> list[Watch]:
        async with get_session(self.engine) as session:
            rows = await WatchStore(session).get_active_watches_for_user(guild_id, user_id)
            return [Watch.model_validate(r) for r in rows]

    async def get_active_watches_for_guild(self, guild_id: int, limit: int = 25) -> list[Watch]:
        """A guild's live watches, most recently active first."""
        async with get_session(self.engine) as session:
            rows = await WatchStore(session).get_active_watches_for_guild(guild_id, limit=limit)
            return sort_by_activity([Watch.model_validate(r) for r in rows])

    async def has_active_watches(self, guild_id: int | None = None) -> bool:
        async with get_session(self.engine) as session:
            return await WatchStore(session).has_active_watches(guild_id)

    async def get_records_for_user(self, guild_id: int, user_id: int) -> list[RatRecord]:
        async with get_session(self.engine) as session:
            rows = await WatchStore(session).get_records_for_user(guild_id, user_id)
            return [RatRecord.model_validate(r) for r in rows]

    async def get_record_for_watch(self, watch_id: str) -> RatRecord | None:
        async with get_session(self.engine) as session:
            row = await WatchStore(session).get_record_for_watch(watch_id)
            return RatRecord.model_validate(row) if row is not None else None

    # --- Guild settings ---

    async def get_guild_settings(self, guild_id: int) -> GuildWatchSettings:
        async with get_session(self.engine) as session:
            row = await WatchStore(session).get_guild_settings(
                guild_id, now=self.clock.now(), defaults=self.settings.guild_defaults()
            )
            return GuildWatchSettings.model_validate(row)

    async def update_guild_settings(self, guild_id: int, **changes: Any) -> GuildWatchSettings:
        """Change a guild's settings. Raises ValueError for an unknown timezone."""
        timezone = changes.get("timezone")
        if timezone is not None and not is_valid_timezone(timezone):
            msg = f"Invalid timezone: {timezone}"
            raise ValueError(msg)
        async with get_session(self.engine) as session:
            row = await WatchStore(session).update_guild_settings(
                guild_id,
                now=self.clock.now(),
                defaults=self.settings.guild_defaults(),
                **changes,
            )
            settings = GuildWatchSettings.model_validate(row)
        logger.info("guild_settings_updated guild=%s fields=%s", guild_id, sorted(changes))
        return settings

    async def parse_schedule_time(self, guild_id: int, text: str) -> datetime | None:
        """Parse a user-typed check-in time in the guild's timezone."""
        guild = await self.get_guild_settings(guild_id)
        return parse_schedule_time(text, guild.timezone, now=self.clock.now())

    # --- Helpers ---

    async def _load(self, watch_id: str) -> Watch | None:
        async with get_session(self.engine) as session:
            row = await WatchStore(session).get_watch(watch_id)
            return Watch.model_validate(row) if row is not None else None

    @staticmethod
    def _not_found(watch_id: str) -> WatchOutcome:
        outcome = WatchOutcome.failure("not_found", "That Rat Watch doesn't exist.")
        outcome.error.watch_id = watch_id  # type: ignore[union-attr]
        return outcome

"""Repository pattern for Rat Watch database access.

Wraps an SQLAlchemy async session. Status changes are conditional updates
keyed on the expected prior status, so concurrent ticks and command handlers
never overwrite each other; the caller learns from the returned bool whether
its write landed. Votes and guilty records are written with single-statement
upserts.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, exists, func, literal, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ratwatch.db.models import (
    GuildSettingsRow,
    RatRecordRow,
    UTCDateTime,
    VoteRow,
    WatchRow,
)
from ratwatch.models.watch import ACTIVE_STATUSES, WatchStatus

_ACTIVE = [s.value for s in ACTIVE_STATUSES]

_GUILD_SETTING_FIELDS = frozenset(
    {"is_enabled", "timezone", "max_advance_hours", "voting_duration_minutes"}
)

_WATCH_TIMESTAMP_FIELDS = frozenset({"voting_started_at", "voting_ended_at", "cleared_at"})


class WatchStore:
    """Async repository for watches, votes, guilty records and guild settings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Watches ---

    async def create_watch(
        self,
        *,
        guild_id: int,
        accused_user_id: int,
        initiator_user_id: int,
        scheduled_at: datetime,
        created_at: datetime,
        channel_id: int = 0,
        original_message_id: int | None = None,
        custom_message: str | None = None,
    ) -> WatchRow:
        row = WatchRow(
            guild_id=guild_id,
            channel_id=channel_id,
            accused_user_id=accused_user_id,
            initiator_user_id=initiator_user_id,
            original_message_id=original_message_id,
            custom_message=custom_message,
            scheduled_at=scheduled_at,
            created_at=created_at,
            status=WatchStatus.PENDING.value,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_watch(self, watch_id: str) -> WatchRow | None:
        """Get a watch by ID, bypassing any stale copy in the identity map."""
        return await self.session.get(WatchRow, watch_id, populate_existing=True)

    async def get_watches_for_guild(
        self,
        guild_id: int,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[WatchRow], int]:
        """One page of a guild's watches, newest first, plus the total count."""
        total_stmt = select(func.count()).select_from(WatchRow).where(WatchRow.guild_id == guild_id)
        total = (await self.session.execute(total_stmt)).scalar_one()

        stmt = (
            select(WatchRow)
            .where(WatchRow.guild_id == guild_id)
            .order_by(WatchRow.created_at.desc(), WatchRow.id)
            .offset(max(page - 1, 0) * page_size)
            .limit(page_size)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def get_active_watches_for_user(self, guild_id: int, user_id: int) -> list[WatchRow]:
        """Pending or Voting watches on *user_id* in a guild, soonest first."""
        stmt = (
            select(WatchRow)
            .where(
                WatchRow.guild_id == guild_id,
                WatchRow.accused_user_id == user_id,
                WatchRow.status.in_(_ACTIVE),
            )
            .order_by(WatchRow.scheduled_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_active_watches_for_guild(self, guild_id: int, limit: int = 25) -> list[WatchRow]:
        """Pending or Voting watches in a guild, soonest deadline first."""
        stmt = (
            select(WatchRow)
            .where(WatchRow.guild_id == guild_id, WatchRow.status.in_(_ACTIVE))
            .order_by(WatchRow.scheduled_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_unannounced_voting_watches(self, now: datetime) -> list[WatchRow]:
        """Open Voting watches whose voting prompt was never posted."""
        stmt = select(WatchRow).where(
            WatchRow.status == WatchStatus.VOTING.value,
            WatchRow.voting_message_id.is_(None),
            WatchRow.voting_ended_at > now,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_guilty_watches_without_record(self) -> list[WatchRow]:
        recorded = select(RatRecordRow.id).where(RatRecordRow.watch_id == WatchRow.id).exists()
        stmt = select(WatchRow).where(WatchRow.status == WatchStatus.GUILTY.value, ~recorded)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_due_for_voting_open(self, now: datetime) -> list[WatchRow]:
        stmt = (
            select(WatchRow)
            .where(
                WatchRow.status == WatchStatus.PENDING.value,
                WatchRow.scheduled_at <= now,
            )
            .order_by(WatchRow.scheduled_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_due_for_finalization(self, now: datetime) -> list[WatchRow]:
        stmt = (
            select(WatchRow)
            .where(
                WatchRow.status == WatchStatus.VOTING.value,
                WatchRow.voting_ended_at <= now,
            )
            .order_by(WatchRow.voting_ended_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_duplicate(
        self,
        guild_id: int,
        accused_user_id: int,
        scheduled_at: datetime,
        window: timedelta,
    ) -> WatchRow | None:
        """Active watch on the same user with ``scheduled_at`` within ±window.

        Served by the (guild_id, accused_user_id, scheduled_at) index.
        """
        stmt = (
            select(WatchRow)
            .where(
                WatchRow.guild_id == guild_id,
                WatchRow.accused_user_id == accused_user_id,
                WatchRow.scheduled_at >= scheduled_at - window,
                WatchRow.scheduled_at <= scheduled_at + window,
                WatchRow.status.in_(_ACTIVE),
            )
            .order_by(WatchRow.scheduled_at)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def has_active_watches(self, guild_id: int | None = None) -> bool:
        conditions = [WatchRow.status.in_(_ACTIVE)]
        if guild_id is not None:
            conditions.append(WatchRow.guild_id == guild_id)
        stmt = select(exists().where(*conditions))
        result = await self.session.execute(stmt)
        return bool(result.scalar())

    async def claim_watch(self, watch_id: str, expected_status: WatchStatus | str) -> bool:
        """Take the write lock on a watch still in *expected_status*.

        A no-op conditional update. Issued first in a transaction, it makes
        every later read in that transaction see the final state of the row,
        and blocks concurrent writers (vote casts included) until commit.
        """
        expected = WatchStatus(expected_status).value
        stmt = (
            update(WatchRow)
            .where(WatchRow.id == watch_id, WatchRow.status == expected)
            .values(status=expected)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def conditional_update_status(
        self,
        watch_id: str,
        expected_status: WatchStatus | str,
        new_status: WatchStatus | str,
        **fields: datetime,
    ) -> bool:
        """Move a watch to *new_status* only if it is still in *expected_status*.

        Returns False when a concurrent actor already moved it; that is the
        idempotency signal, not an error.
        """
        unknown = set(fields) - _WATCH_TIMESTAMP_FIELDS
        if unknown:
            msg = f"Unknown watch fields: {sorted(unknown)}"
            raise ValueError(msg)
        stmt = (
            update(WatchRow)
            .where(
                WatchRow.id == watch_id,
                WatchRow.status == WatchStatus(expected_status).value,
            )
            .values(status=WatchStatus(new_status).value, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def set_voting_message_id(self, watch_id: str, message_id: int) -> None:
        stmt = (
            update(WatchRow)
            .where(WatchRow.id == watch_id)
            .values(voting_message_id=message_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    # --- Votes ---

    async def upsert_vote(
        self,
        watch_id: str,
        voter_user_id: int,
        is_guilty_vote: bool,
        now: datetime,
    ) -> bool:
        """Insert or overwrite a ballot in one statement.

        The row is only produced while the watch is Voting and *now* is
        before ``voting_ended_at``, so a ballot racing finalization either
        lands before the finalizer takes its lock or is refused. Returns True
        if the ballot was stored.
        """
        still_open = (
            select(WatchRow.id)
            .where(
                WatchRow.id == watch_id,
                WatchRow.status == WatchStatus.VOTING.value,
                WatchRow.voting_ended_at > now,
            )
            .exists()
        )
        ballot = select(
            literal(str(uuid.uuid4())),
            literal(watch_id),
            literal(voter_user_id),
            literal(is_guilty_vote),
            literal(now, type_=UTCDateTime()),
        ).where(still_open)

        stmt = sqlite_insert(VoteRow.__table__).from_select(
            ["id", "watch_id", "voter_user_id", "is_guilty_vote", "cast_at"],
            ballot,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["watch_id", "voter_user_id"],
            set_={
                "is_guilty_vote": stmt.excluded.is_guilty_vote,
                "cast_at": stmt.excluded.cast_at,
            },
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def tally(self, watch_id: str) -> tuple[int, int]:
        """(guilty, not_guilty) counts. Votes on a cancelled watch count as zero."""
        stmt = (
            select(
                func.coalesce(func.sum(case((VoteRow.is_guilty_vote.is_(True), 1), else_=0)), 0),
                func.coalesce(func.sum(case((VoteRow.is_guilty_vote.is_(False), 1), else_=0)), 0),
            )
            .select_from(VoteRow)
            .join(WatchRow, WatchRow.id == VoteRow.watch_id)
            .where(
                VoteRow.watch_id == watch_id,
                WatchRow.status != WatchStatus.CANCELLED.value,
            )
        )
        guilty, not_guilty = (await self.session.execute(stmt)).one()
        return int(guilty), int(not_guilty)

    # --- Guilty records ---

    async def record_verdict(
        self,
        *,
        watch_id: str,
        guild_id: int,
        user_id: int,
        guilty_votes: int,
        not_guilty_votes: int,
        recorded_at: datetime,
        original_message_link: str | None = None,
    ) -> bool:
        """Store the guilty record for a watch. Returns False if it already exists."""
        stmt = (
            sqlite_insert(RatRecordRow.__table__)
            .values(
                id=str(uuid.uuid4()),
                watch_id=watch_id,
                guild_id=guild_id,
                user_id=user_id,
                guilty_votes=guilty_votes,
                not_guilty_votes=not_guilty_votes,
                recorded_at=recorded_at,
                original_message_link=original_message_link,
            )
            .on_conflict_do_nothing(index_elements=["watch_id"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get_record_for_watch(self, watch_id: str) -> RatRecordRow | None:
        stmt = select(RatRecordRow).where(RatRecordRow.watch_id == watch_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_records_for_user(self, guild_id: int, user_id: int) -> list[RatRecordRow]:
        stmt = (
            select(RatRecordRow)
            .where(RatRecordRow.guild_id == guild_id, RatRecordRow.user_id == user_id)
            .order_by(RatRecordRow.recorded_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Guild settings ---

    async def get_guild_settings(
        self,
        guild_id: int,
        *,
        now: datetime,
        defaults: dict[str, Any] | None = None,
    ) -> GuildSettingsRow:
        """Get a guild's settings, creating the row from *defaults* on first read."""
        row = await self.session.get(GuildSettingsRow, guild_id, populate_existing=True)
        if row is not None:
            return row
        values = {k: v for k, v in (defaults or {}).items() if k in _GUILD_SETTING_FIELDS}
        stmt = (
            sqlite_insert(GuildSettingsRow.__table__)
            .values(guild_id=guild_id, created_at=now, updated_at=now, **values)
            .on_conflict_do_nothing(index_elements=["guild_id"])
        )
        await self.session.execute(stmt)
        row = await self.session.get(GuildSettingsRow, guild_id, populate_existing=True)
        if row is None:
            msg = f"Guild settings row for {guild_id} vanished after insert"
            raise RuntimeError(msg)
        return row

    async def claim_guild(self, guild_id: int) -> None:
        """Take the write lock for a guild's watch creation (no-op update)."""
        stmt = (
            update(GuildSettingsRow)
            .where(GuildSettingsRow.guild_id == guild_id)
            .values(guild_id=guild_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def update_guild_settings(
        self,
        guild_id: int,
        *,
        now: datetime,
        defaults: dict[str, Any] | None = None,
        **changes: Any,
    ) -> GuildSettingsRow:
        unknown = set(changes) - _GUILD_SETTING_FIELDS
        if unknown:
            msg = f"Unknown guild setting(s): {sorted(unknown)}"
            raise ValueError(msg)
        row = await self.get_guild_settings(guild_id, now=now, defaults=defaults)
        for key, value in changes.items():
            setattr(row, key, value)
        row.updated_at = now
        await self.session.flush()
        return row

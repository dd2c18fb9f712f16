"""SQLAlchemy ORM models for the Rat Watch database.

Tables: rat_watches, rat_votes, rat_records, guild_rat_watch_settings.
Votes and records cascade with their watch.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator[datetime]):
    """Stores naive UTC, hands back aware UTC.

    SQLite keeps no offset, so every instant is normalised to UTC on the
    way in and tagged as UTC on the way out. Range comparisons on the
    stored text stay chronological.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class WatchRow(Base):
    __tablename__ = "rat_watches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    channel_id: Mapped[int] = mapped_column(BigInteger, default=0)
    accused_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    initiator_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    original_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    voting_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    custom_message: Mapped[str | None] = mapped_column(String(200), nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    voting_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    voting_ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cleared_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    votes: Mapped[list[VoteRow]] = relationship(
        back_populates="watch",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        # Duplicate guard range lookup.
        Index("ix_rat_watches_guild_accused_scheduled", "guild_id", "accused_user_id", "scheduled_at"),
        # Scheduler due-list scans.
        Index("ix_rat_watches_status_scheduled", "status", "scheduled_at"),
        Index("ix_rat_watches_status_voting_ended", "status", "voting_ended_at"),
    )


class VoteRow(Base):
    __tablename__ = "rat_votes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    watch_id: Mapped[str] = mapped_column(
        ForeignKey("rat_watches.id", ondelete="CASCADE"), nullable=False
    )
    voter_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_guilty_vote: Mapped[bool] = mapped_column(Boolean, nullable=False)
    cast_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    watch: Mapped[WatchRow] = relationship(back_populates="votes")

    __table_args__ = (
        UniqueConstraint("watch_id", "voter_user_id", name="uq_rat_votes_watch_voter"),
        Index("ix_rat_votes_watch_id", "watch_id"),
    )


class RatRecordRow(Base):
    __tablename__ = "rat_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    watch_id: Mapped[str] = mapped_column(
        ForeignKey("rat_watches.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    guilty_votes: Mapped[int] = mapped_column(Integer, nullable=False)
    not_guilty_votes: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    original_message_link: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (Index("ix_rat_records_guild_user", "guild_id", "user_id"),)


class GuildSettingsRow(Base):
    __tablename__ = "guild_rat_watch_settings"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    timezone: Mapped[str] = mapped_column(String(100), default="UTC")
    max_advance_hours: Mapped[int] = mapped_column(Integer, default=24)
    voting_duration_minutes: Mapped[int] = mapped_column(Integer, default=5)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

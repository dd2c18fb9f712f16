"""Rat Watch models: watches, tallies, guilty records and per-guild settings.

A Watch is one instance of the timed accountability challenge against a
user. It starts Pending, opens for Voting at its scheduled time unless the
accused checks in first, and resolves to a verdict when voting closes.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class WatchStatus(StrEnum):
    """Lifecycle status of a Watch.

    The str mixin allows direct comparison with the raw status strings
    stored in the database (e.g., ``row.status == WatchStatus.VOTING``).
    """

    PENDING = "pending"
    VOTING = "voting"
    GUILTY = "guilty"
    NOT_GUILTY = "not_guilty"
    CLEARED_EARLY = "cleared_early"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[WatchStatus] = frozenset(
    {
        WatchStatus.GUILTY,
        WatchStatus.NOT_GUILTY,
        WatchStatus.CLEARED_EARLY,
        WatchStatus.CANCELLED,
    }
)

# Statuses the duplicate guard and the presence indicator treat as live.
ACTIVE_STATUSES: frozenset[WatchStatus] = frozenset({WatchStatus.PENDING, WatchStatus.VOTING})


class Watch(BaseModel):
    """One accountability-game instance against a user."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    guild_id: int
    channel_id: int = 0
    accused_user_id: int
    initiator_user_id: int
    original_message_id: int | None = None
    voting_message_id: int | None = None
    custom_message: str | None = Field(default=None, max_length=200)
    scheduled_at: datetime
    created_at: datetime
    status: WatchStatus = WatchStatus.PENDING
    voting_started_at: datetime | None = None
    voting_ended_at: datetime | None = None
    cleared_at: datetime | None = None

    @property
    def original_message_link(self) -> str | None:
        """Jump link to the message the watch was raised on, if known."""
        if not self.original_message_id or not self.channel_id:
            return None
        return (
            f"https://discord.com/channels/{self.guild_id}/"
            f"{self.channel_id}/{self.original_message_id}"
        )


class VoteTally(BaseModel):
    """Guilty vs. not-guilty counts for a single watch."""

    watch_id: str
    guilty_count: int = Field(default=0, ge=0)
    not_guilty_count: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.guilty_count + self.not_guilty_count


class GuildWatchSettings(BaseModel):
    """Per-guild Rat Watch configuration."""

    model_config = ConfigDict(from_attributes=True)

    guild_id: int
    is_enabled: bool = True
    timezone: str = "UTC"
    max_advance_hours: int = Field(default=24, ge=1)
    voting_duration_minutes: int = Field(default=5, ge=1)


class RatRecord(BaseModel):
    """Permanent record of a guilty verdict, one per watch."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    watch_id: str
    guild_id: int
    user_id: int
    guilty_votes: int
    not_guilty_votes: int
    recorded_at: datetime
    original_message_link: str | None = None

"""Discord embed builders for Rat Watch.

Each builder takes a watch (and a tally where relevant) and returns a styled
embed ready to send. No I/O happens here.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import discord

from ratwatch.models.watch import WatchStatus

if TYPE_CHECKING:
    from ratwatch.models.watch import GuildWatchSettings, VoteTally, Watch

COLOR_PENDING = 0xF39C12  # Gold: watch created, waiting on check-in
COLOR_VOTING = 0xE67E22  # Orange: voting open
COLOR_GUILTY = 0xE74C3C  # Red: guilty verdict
COLOR_CLEARED = 0x2ECC71  # Green: not guilty / checked in
COLOR_NEUTRAL = 0x95A5A6  # Grey: cancelled
COLOR_ERROR = 0xE74C3C
COLOR_SETTINGS = 0x3498DB


def _timestamp(instant: datetime, style: str = "F") -> str:
    return f"<t:{int(instant.timestamp())}:{style}>"


def _with_context(watch: Watch, description: str) -> str:
    if watch.custom_message:
        description += f"\n\n> {watch.custom_message}"
    link = watch.original_message_link
    if link:
        description += f"\n\n[Jump to message]({link})"
    return description


def build_watch_created_embed(watch: Watch) -> discord.Embed:
    description = (
        f"<@{watch.accused_user_id}> is on Rat Watch.\n"
        f"⏰ Check-in at {_timestamp(watch.scheduled_at)} "
        f"({_timestamp(watch.scheduled_at, 'R')})"
    )
    embed = discord.Embed(
        title="🐀 Rat Watch Created",
        description=_with_context(watch, description),
        color=COLOR_PENDING,
    )
    embed.set_footer(text=f"Started by user {watch.initiator_user_id} · Watch ID: {watch.id}")
    return embed


def build_voting_embed(watch: Watch, tally: VoteTally | None = None) -> discord.Embed:
    """Voting prompt posted when a watch's deadline passes without a check-in."""
    closes = (
        f"Voting closes {_timestamp(watch.voting_ended_at, 'R')}."
        if watch.voting_ended_at
        else "Voting is open."
    )
    description = f"<@{watch.accused_user_id}> didn't check in! Are they a rat?\n{closes}"
    embed = discord.Embed(
        title="🐀 Rat Watch: Voting Open",
        description=_with_context(watch, description),
        color=COLOR_VOTING,
    )
    if tally is not None:
        embed.add_field(name="Rat", value=str(tally.guilty_count), inline=True)
        embed.add_field(name="Not Rat", value=str(tally.not_guilty_count), inline=True)
    return embed


def build_verdict_embed(watch: Watch, tally: VoteTally | None) -> discord.Embed:
    guilty = tally.guilty_count if tally else 0
    not_guilty = tally.not_guilty_count if tally else 0

    if watch.status == WatchStatus.GUILTY:
        title = "🐀 Verdict: RAT"
        description = f"The people have spoken. <@{watch.accused_user_id}> is a rat."
        color = COLOR_GUILTY
    else:
        title = "✅ Verdict: Not a Rat"
        if guilty + not_guilty == 0:
            description = f"Nobody voted. <@{watch.accused_user_id}> walks free."
        else:
            description = f"<@{watch.accused_user_id}> has been found not guilty."
        color = COLOR_CLEARED

    embed = discord.Embed(title=title, description=_with_context(watch, description), color=color)
    embed.add_field(name="Rat", value=str(guilty), inline=True)
    embed.add_field(name="Not Rat", value=str(not_guilty), inline=True)
    return embed


def build_checked_in_embed(watch: Watch) -> discord.Embed:
    when = _timestamp(watch.cleared_at, "t") if watch.cleared_at else "in time"
    return discord.Embed(
        title="✅ Checked In",
        description=f"<@{watch.accused_user_id}> checked in {when}. Not a rat (this time).",
        color=COLOR_CLEARED,
    )


def build_cancelled_embed(watch: Watch) -> discord.Embed:
    return discord.Embed(
        title="Rat Watch Cancelled",
        description=f"The Rat Watch on <@{watch.accused_user_id}> has been called off.",
        color=COLOR_NEUTRAL,
    )


def build_cleared_embed(count: int) -> discord.Embed:
    if count == 0:
        return discord.Embed(
            title="✅ No Active Watches",
            description="You have no active Rat Watches to clear.",
            color=COLOR_CLEARED,
        )
    plural = "es" if count != 1 else ""
    return discord.Embed(
        title="✅ Watches Cleared",
        description=f"Successfully cleared {count} active Rat Watch{plural}.",
        color=COLOR_CLEARED,
    )


def build_error_embed(title: str, description: str) -> discord.Embed:
    return discord.Embed(title=f"❌ {title}", description=description, color=COLOR_ERROR)


def build_settings_embed(settings: GuildWatchSettings, *, updated: bool = False) -> discord.Embed:
    embed = discord.Embed(title="🐀 Rat Watch Settings", color=COLOR_SETTINGS)
    embed.add_field(name="Timezone", value=settings.timezone, inline=True)
    embed.add_field(name="Max Advance Hours", value=f"{settings.max_advance_hours}h", inline=True)
    embed.add_field(
        name="Voting Duration", value=f"{settings.voting_duration_minutes} min", inline=True
    )
    enabled = "Yes" if settings.is_enabled else "No"
    embed.add_field(name="Feature Enabled", value=enabled, inline=True)
    embed.set_footer(
        text="Settings updated!" if updated else "Use /rat-settings with an option to change"
    )
    return embed

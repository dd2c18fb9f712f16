"""Discord UI components for Rat Watch interactions.

VoteButton / VoteView: Rat / Not Rat ballot buttons on the voting message.
CheckInButton / CheckInView: "I'm here!" button on the watch-created message.
CreateWatchModal: asks for the check-in time when a watch is raised on a message.

The buttons are dynamic items: their custom IDs carry the watch id, so they
keep working after a bot restart without re-registering per-message views.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import discord

from ratwatch.db.engine import StorageUnavailableError
from ratwatch.discord.embeds import build_error_embed, build_watch_created_embed
from ratwatch.discord.helpers import (
    INVALID_TIME_HELP,
    check_in_custom_id,
    describe_error,
    error_title,
    vote_custom_id,
)

if TYPE_CHECKING:
    from ratwatch.core.service import WatchService

logger = logging.getLogger(__name__)

STORAGE_UNAVAILABLE_TEXT = (
    "Rat Watch can't reach its database right now. Try again in a moment."
)

GUILTY_LABEL = "Rat 🐀"
NOT_GUILTY_LABEL = "Not Rat ✓"


def _service_for(interaction: discord.Interaction) -> WatchService:
    return interaction.client.service  # type: ignore[attr-defined]


async def handle_vote(
    interaction: discord.Interaction,
    service: WatchService,
    watch_id: str,
    is_guilty: bool,
) -> None:
    try:
        outcome = await service.cast_vote(watch_id, interaction.user.id, is_guilty)
    except StorageUnavailableError:
        await interaction.response.send_message(STORAGE_UNAVAILABLE_TEXT, ephemeral=True)
        return

    if outcome.error is not None:
        await interaction.response.send_message(
            embed=build_error_embed(error_title(outcome.error), describe_error(outcome.error)),
            ephemeral=True,
        )
        return

    label = GUILTY_LABEL if is_guilty else NOT_GUILTY_LABEL
    await interaction.response.send_message(
        f"Your vote has been recorded: **{label}**", ephemeral=True
    )


async def handle_check_in(
    interaction: discord.Interaction,
    service: WatchService,
    watch_id: str,
) -> None:
    try:
        outcome = await service.check_in(watch_id, interaction.user.id)
    except StorageUnavailableError:
        await interaction.response.send_message(STORAGE_UNAVAILABLE_TEXT, ephemeral=True)
        return

    if outcome.error is not None:
        await interaction.response.send_message(
            embed=build_error_embed(error_title(outcome.error), describe_error(outcome.error)),
            ephemeral=True,
        )
        return
    await interaction.response.send_message("You checked in. Not a rat!", ephemeral=True)


class VoteButton(
    discord.ui.DynamicItem[discord.ui.Button],
    template=r"ratwatch:vote:(?P<watch_id>[\w-]+):(?P<choice>guilty|notguilty)",
):
    """One ballot button. The custom ID encodes the watch and the choice."""

    def __init__(self, watch_id: str, is_guilty: bool) -> None:
        super().__init__(
            discord.ui.Button(
                label=GUILTY_LABEL if is_guilty else NOT_GUILTY_LABEL,
                style=discord.ButtonStyle.danger if is_guilty else discord.ButtonStyle.success,
                custom_id=vote_custom_id(watch_id, is_guilty),
            )
        )
        self.watch_id = watch_id
        self.is_guilty = is_guilty

    @classmethod
    async def from_custom_id(
        cls,
        interaction: discord.Interaction,  # noqa: ARG003
        item: discord.ui.Button,  # noqa: ARG003
        match: re.Match[str],
    ) -> VoteButton:
        return cls(match["watch_id"], match["choice"] == "guilty")

    async def callback(self, interaction: discord.Interaction) -> None:
        await handle_vote(interaction, _service_for(interaction), self.watch_id, self.is_guilty)


class CheckInButton(
    discord.ui.DynamicItem[discord.ui.Button],
    template=r"ratwatch:checkin:(?P<watch_id>[\w-]+)",
):
    def __init__(self, watch_id: str) -> None:
        super().__init__(
            discord.ui.Button(
                label="I'm here!",
                style=discord.ButtonStyle.primary,
                emoji="✅",
                custom_id=check_in_custom_id(watch_id),
            )
        )
        self.watch_id = watch_id

    @classmethod
    async def from_custom_id(
        cls,
        interaction: discord.Interaction,  # noqa: ARG003
        item: discord.ui.Button,  # noqa: ARG003
        match: re.Match[str],
    ) -> CheckInButton:
        return cls(match["watch_id"])

    async def callback(self, interaction: discord.Interaction) -> None:
        await handle_check_in(interaction, _service_for(interaction), self.watch_id)


class VoteView(discord.ui.View):
    """Rat / Not Rat buttons for a watch in Voting."""

    def __init__(self, watch_id: str) -> None:
        super().__init__(timeout=None)
        self.add_item(VoteButton(watch_id, is_guilty=True))
        self.add_item(VoteButton(watch_id, is_guilty=False))


class CheckInView(discord.ui.View):
    def __init__(self, watch_id: str) -> None:
        super().__init__(timeout=None)
        self.add_item(CheckInButton(watch_id))


class CreateWatchModal(discord.ui.Modal, title="Rat Watch"):
    """Collects the check-in time (and an optional note) for a new watch."""

    when: discord.ui.TextInput = discord.ui.TextInput(
        label="When should they check in?",
        placeholder="10m, 2h, 1h30m, 10pm, 22:00",
        max_length=20,
    )
    note: discord.ui.TextInput = discord.ui.TextInput(
        label="Message (optional)",
        style=discord.TextStyle.paragraph,
        required=False,
        max_length=200,
    )

    def __init__(self, *, service: WatchService, target: discord.Message) -> None:
        super().__init__()
        self.service = service
        self.target = target

    async def on_submit(self, interaction: discord.Interaction) -> None:
        guild_id = interaction.guild_id or 0
        try:
            scheduled_at = await self.service.parse_schedule_time(guild_id, str(self.when.value))
            if scheduled_at is None:
                await interaction.response.send_message(
                    embed=build_error_embed("Invalid Time Format", INVALID_TIME_HELP),
                    ephemeral=True,
                )
                return

            outcome = await self.service.create_watch(
                guild_id,
                self.target.author.id,
                interaction.user.id,
                scheduled_at,
                str(self.note.value) or None,
                channel_id=self.target.channel.id,
                original_message_id=self.target.id,
            )
        except StorageUnavailableError:
            await interaction.response.send_message(STORAGE_UNAVAILABLE_TEXT, ephemeral=True)
            return

        if outcome.error is not None or outcome.watch is None:
            error = outcome.error
            await interaction.response.send_message(
                embed=build_error_embed(
                    error_title(error) if error else "Error",
                    describe_error(error) if error else "Could not create the watch.",
                ),
                ephemeral=True,
            )
            return

        await interaction.response.send_message(
            embed=build_watch_created_embed(outcome.watch),
            view=CheckInView(outcome.watch.id),
        )

"""Discord bot for Rat Watch.

Runs alongside FastAPI using the same event loop. Subscribes to the
NotificationBus and turns watch notifications into channel messages: the
voting prompt with ballot buttons, the verdict (edited into the voting
message), check-ins and cancellations. Also DMs the accused with the verdict.

The bot is optional: if DISCORD_BOT_TOKEN is not set, nothing starts.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

import discord
from discord import Intents, app_commands
from discord.ext import commands

from ratwatch.core.notifier import NotificationKind, WatchNotification
from ratwatch.db.engine import StorageUnavailableError
from ratwatch.discord.embeds import (
    build_cancelled_embed,
    build_checked_in_embed,
    build_cleared_embed,
    build_error_embed,
    build_settings_embed,
    build_verdict_embed,
    build_voting_embed,
)
from ratwatch.discord.helpers import describe_error, error_title, watch_choice_label
from ratwatch.discord.views import (
    STORAGE_UNAVAILABLE_TEXT,
    CheckInButton,
    CreateWatchModal,
    VoteButton,
    VoteView,
)

if TYPE_CHECKING:
    from ratwatch.config import Settings
    from ratwatch.core.notifier import NotificationBus
    from ratwatch.core.service import WatchService

logger = logging.getLogger(__name__)

ACTIVE_PRESENCE = "for rats 🐀"
MAX_VOTING_MINUTES = 60


class RatWatchBot(commands.Bot):
    """The Rat Watch Discord bot.

    Provides the "Rat Watch" message context menu, /rat-clear, /rat-cancel
    and /rat-settings, and posts watch notifications to the watch's channel.
    """

    def __init__(
        self,
        settings: Settings,
        bus: NotificationBus,
        service: WatchService,
    ) -> None:
        intents = Intents.default()
        super().__init__(
            command_prefix="!",
            intents=intents,
            description="Rat Watch: call out the people who say they'll be right back.",
        )
        self.settings = settings
        self.bus = bus
        self.service = service
        self._listener_task: asyncio.Task[None] | None = None
        self._recovered = False
        self.runner_task: asyncio.Task[None] | None = None
        self._setup_commands()

    def _setup_commands(self) -> None:
        """Register slash commands and the message context menu."""

        @self.tree.command(name="rat-clear", description="Check in on all your active Rat Watches")
        async def rat_clear_command(interaction: discord.Interaction) -> None:
            await self._handle_clear(interaction)

        @self.tree.command(name="rat-cancel", description="Call off a Rat Watch")
        @app_commands.describe(watch_id="The watch to cancel")
        async def rat_cancel_command(interaction: discord.Interaction, watch_id: str) -> None:
            await self._handle_cancel(interaction, watch_id)

        @rat_cancel_command.autocomplete("watch_id")
        async def _watch_autocomplete(
            interaction: discord.Interaction,
            current: str,
        ) -> list[app_commands.Choice[str]]:
            return await self._autocomplete_watches(interaction, current)

        @self.tree.command(
            name="rat-settings",
            description="View or configure Rat Watch settings (server managers only)",
        )
        @app_commands.describe(
            timezone="Timezone for times like '10pm', e.g. America/New_York",
            voting_minutes="How long voting stays open, in minutes (1-60)",
            enabled="Turn Rat Watch on or off in this server",
        )
        async def rat_settings_command(
            interaction: discord.Interaction,
            timezone: str | None = None,
            voting_minutes: int | None = None,
            enabled: bool | None = None,
        ) -> None:
            await self._handle_settings(interaction, timezone, voting_minutes, enabled)

        async def rat_watch_menu(interaction: discord.Interaction, message: discord.Message) -> None:
            await self._handle_create(interaction, message)

        self.tree.add_command(app_commands.ContextMenu(name="Rat Watch", callback=rat_watch_menu))

    async def setup_hook(self) -> None:
        """Register persistent buttons and sync slash commands."""
        self.add_dynamic_items(VoteButton, CheckInButton)
        await self.tree.sync()
        logger.info("discord_commands_synced")

    async def on_ready(self) -> None:
        """Start the notification listener (on_ready fires on every reconnect)."""
        user = self.user
        logger.info("discord_bot_ready user=%s", user.name if user else "unknown")
        if self._listener_task is None or self._listener_task.done():
            self._listener_task = asyncio.create_task(
                self._listen_to_notifications(), name="ratwatch-notification-listener"
            )
        await self._refresh_presence()

    # --- Commands ---

    async def _handle_create(
        self,
        interaction: discord.Interaction,
        message: discord.Message,
    ) -> None:
        if message.author.bot:
            await interaction.response.send_message(
                embed=build_error_embed(
                    "Cannot Watch Bots",
                    "Bots cannot be targeted with Rat Watch. "
                    "Please select a message from a human user.",
                ),
                ephemeral=True,
            )
            return
        await interaction.response.send_modal(
            CreateWatchModal(service=self.service, target=message)
        )

    async def _handle_clear(self, interaction: discord.Interaction) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message(
                "Rat Watch only works inside a server.", ephemeral=True
            )
            return
        try:
            cleared = await self.service.check_in_all(interaction.guild_id, interaction.user.id)
        except StorageUnavailableError:
            await interaction.response.send_message(STORAGE_UNAVAILABLE_TEXT, ephemeral=True)
            return
        await interaction.response.send_message(embed=build_cleared_embed(cleared), ephemeral=True)

    async def _handle_cancel(self, interaction: discord.Interaction, watch_id: str) -> None:
        permissions = getattr(interaction.user, "guild_permissions", None)
        is_moderator = bool(permissions and permissions.manage_messages)
        try:
            outcome = await self.service.cancel(
                watch_id.strip(), interaction.user.id, is_moderator=is_moderator
            )
        except StorageUnavailableError:
            await interaction.response.send_message(STORAGE_UNAVAILABLE_TEXT, ephemeral=True)
            return
        if outcome.error is not None:
            await interaction.response.send_message(
                embed=build_error_embed(error_title(outcome.error), describe_error(outcome.error)),
                ephemeral=True,
            )
            return
        await interaction.response.send_message("Rat Watch cancelled.", ephemeral=True)

    async def _autocomplete_watches(
        self,
        interaction: discord.Interaction,
        current: str,
    ) -> list[app_commands.Choice[str]]:
        """Return the guild's active watches matching the current input."""
        if interaction.guild_id is None:
            return []
        try:
            watches = await self.service.get_active_watches_for_guild(interaction.guild_id)
        except StorageUnavailableError:
            logger.warning("discord_watch_autocomplete_failed guild=%s", interaction.guild_id)
            return []

        lowered = current.strip().lower()
        choices: list[app_commands.Choice[str]] = []
        guild = interaction.guild
        for watch in watches:
            member = guild.get_member(watch.accused_user_id) if guild else None
            label = watch_choice_label(watch, member.display_name if member else None)
            if lowered in label.lower() or watch.id.startswith(lowered):
                choices.append(app_commands.Choice(name=label, value=watch.id))
        return choices[:25]

    async def _handle_settings(
        self,
        interaction: discord.Interaction,
        timezone: str | None = None,
        voting_minutes: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        """Handle /rat-settings: show the guild's settings, changing any option given."""
        if interaction.guild_id is None:
            await interaction.response.send_message(
                "Rat Watch only works inside a server.", ephemeral=True
            )
            return
        permissions = getattr(interaction.user, "guild_permissions", None)
        if not (permissions and (permissions.manage_guild or permissions.administrator)):
            await interaction.response.send_message(
                embed=build_error_embed(
                    "Not Allowed", "Only server managers can view or change Rat Watch settings."
                ),
                ephemeral=True,
            )
            return
        if voting_minutes is not None and not 1 <= voting_minutes <= MAX_VOTING_MINUTES:
            await interaction.response.send_message(
                embed=build_error_embed(
                    "Invalid Setting",
                    f"Voting duration must be between 1 and {MAX_VOTING_MINUTES} minutes.",
                ),
                ephemeral=True,
            )
            return

        changes: dict[str, object] = {}
        if timezone and timezone.strip():
            changes["timezone"] = timezone.strip()
        if voting_minutes is not None:
            changes["voting_duration_minutes"] = voting_minutes
        if enabled is not None:
            changes["is_enabled"] = enabled

        try:
            if changes:
                settings = await self.service.update_guild_settings(
                    interaction.guild_id, **changes
                )
            else:
                settings = await self.service.get_guild_settings(interaction.guild_id)
        except ValueError as exc:
            await interaction.response.send_message(
                embed=build_error_embed("Invalid Setting", str(exc)), ephemeral=True
            )
            return
        except StorageUnavailableError:
            await interaction.response.send_message(STORAGE_UNAVAILABLE_TEXT, ephemeral=True)
            return

        if changes:
            logger.info(
                "discord_settings_updated guild=%s user=%s fields=%s",
                interaction.guild_id,
                interaction.user.id,
                sorted(changes),
            )
        await interaction.response.send_message(
            embed=build_settings_embed(settings, updated=bool(changes)), ephemeral=True
        )

    # --- Notifications ---

    async def _listen_to_notifications(self) -> None:
        """Subscribe to the NotificationBus and forward notifications to Discord."""
        async with self.bus.subscribe() as subscription:
            if not self._recovered:
                await self._recover_side_effects()
            async for notification in subscription:
                try:
                    await self._dispatch_notification(notification)
                except Exception:  # Last-resort handler: Discord and DB errors alike
                    logger.exception(
                        "discord_notification_dispatch_error kind=%s watch=%s",
                        notification.kind.value,
                        notification.watch.id,
                    )

    async def _recover_side_effects(self) -> None:
        """Replay notifications a previous shutdown cut off, once per process.

        Runs after the bus subscription is open so the replayed notifications
        reach this listener.
        """
        try:
            count = await self.service.recover_side_effects()
        except StorageUnavailableError:
            logger.warning("discord_side_effect_recovery_failed")
            return
        self._recovered = True
        logger.info("discord_side_effects_recovered count=%d", count)

    async def _dispatch_notification(self, notification: WatchNotification) -> None:
        watch = notification.watch
        kind = notification.kind

        if kind == NotificationKind.ACCUSED_NOTIFIED:
            await self._notify_accused(notification)
            return

        channel = self.get_channel(watch.channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            logger.warning(
                "discord_channel_unavailable kind=%s watch=%s channel=%s",
                kind.value,
                watch.id,
                watch.channel_id,
            )
            return

        if kind == NotificationKind.VOTING_OPENED:
            message = await channel.send(
                content=f"<@{watch.accused_user_id}>",
                embed=build_voting_embed(watch),
                view=VoteView(watch.id),
            )
            await self.service.set_voting_message_id(watch.id, message.id)
        elif kind == NotificationKind.VERDICT_ANNOUNCED:
            embed = build_verdict_embed(watch, notification.tally)
            if not await self._edit_voting_message(channel, watch.voting_message_id, embed):
                await channel.send(embed=embed)
        elif kind == NotificationKind.CHECKED_IN:
            await channel.send(embed=build_checked_in_embed(watch))
        elif kind == NotificationKind.CANCELLED:
            embed = build_cancelled_embed(watch)
            if not await self._edit_voting_message(channel, watch.voting_message_id, embed):
                await channel.send(embed=embed)

        await self._refresh_presence()

    async def _edit_voting_message(
        self,
        channel: discord.abc.Messageable,
        message_id: int | None,
        embed: discord.Embed,
    ) -> bool:
        """Replace the voting prompt with *embed* and drop its buttons."""
        if not message_id or not isinstance(channel, discord.TextChannel | discord.Thread):
            return False
        try:
            await channel.get_partial_message(message_id).edit(embed=embed, view=None)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as exc:
            logger.info("discord_voting_message_edit_failed message=%s err=%s", message_id, exc)
            return False
        return True

    async def _notify_accused(self, notification: WatchNotification) -> None:
        watch = notification.watch
        user = self.get_user(watch.accused_user_id)
        try:
            if user is None:
                user = await self.fetch_user(watch.accused_user_id)
            await user.send(embed=build_verdict_embed(watch, notification.tally))
            logger.info("accused_notified watch=%s user=%s", watch.id, watch.accused_user_id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as exc:
            # DMs disabled or user gone, non-fatal
            logger.info(
                "accused_notify_failed watch=%s user=%s err=%s",
                watch.id,
                watch.accused_user_id,
                exc,
            )

    async def _refresh_presence(self) -> None:
        """Show a "watching" presence while any watch is active."""
        try:
            active = await self.service.has_active_watches()
        except StorageUnavailableError:
            return
        activity = (
            discord.Activity(type=discord.ActivityType.watching, name=ACTIVE_PRESENCE)
            if active
            else None
        )
        await self.change_presence(activity=activity)

    async def close(self) -> None:
        if self._listener_task and not self._listener_task.done():
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
        await super().close()


def is_discord_enabled(settings: Settings) -> bool:
    """Whether the Discord bot should start: enabled and a token is set."""
    return bool(settings.discord_enabled and settings.discord_bot_token)


async def start_discord_bot(
    settings: Settings,
    bus: NotificationBus,
    service: WatchService,
) -> RatWatchBot:
    """Create and start the Discord bot in the current event loop.

    Returns the bot instance so the caller can stop it during shutdown.
    The bot runs as a background task; this function returns immediately.
    """
    bot = RatWatchBot(settings=settings, bus=bus, service=service)

    async def _run_bot() -> None:
        try:
            await bot.start(settings.discord_bot_token)
        except asyncio.CancelledError:
            logger.info("discord_bot_cancelled")
        except Exception:  # Last-resort handler: bot.start raises connection and auth errors
            logger.exception("discord_bot_error")
        finally:
            if not bot.is_closed():
                await bot.close()

    bot.runner_task = asyncio.create_task(_run_bot(), name="discord-bot")
    logger.info("discord_bot_started")
    return bot

"""Tests for the Discord bot integration.

All Discord objects are mocked; no real Discord connection is needed.
"""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import discord
import pytest

from ratwatch.config import Settings
from ratwatch.core.clock import ManualClock
from ratwatch.core.notifier import NotificationBus, NotificationKind, WatchNotification
from ratwatch.core.scheduler_runner import tick_watches
from ratwatch.core.service import WatchService
from ratwatch.db.engine import StorageUnavailableError
from ratwatch.discord.bot import RatWatchBot, is_discord_enabled, start_discord_bot
from ratwatch.discord.embeds import (
    COLOR_CLEARED,
    COLOR_GUILTY,
    build_cleared_embed,
    build_error_embed,
    build_settings_embed,
    build_verdict_embed,
    build_voting_embed,
    build_watch_created_embed,
)
from ratwatch.discord.helpers import (
    describe_error,
    error_title,
    vote_custom_id,
    watch_choice_label,
)
from ratwatch.discord.views import (
    STORAGE_UNAVAILABLE_TEXT,
    CheckInView,
    CreateWatchModal,
    VoteButton,
    VoteView,
    handle_check_in,
    handle_vote,
)
from ratwatch.models.outcomes import WatchOutcome
from ratwatch.models.watch import GuildWatchSettings, VoteTally, Watch, WatchStatus

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def make_interaction(**overrides) -> AsyncMock:
    """Build a fully-configured Discord interaction mock."""
    interaction = AsyncMock(spec=discord.Interaction)
    interaction.response = AsyncMock()
    interaction.followup = AsyncMock()
    interaction.user = MagicMock(spec=discord.Member)
    interaction.user.id = overrides.get("user_id", 12345)
    interaction.user.guild_permissions = MagicMock()
    interaction.user.guild_permissions.manage_messages = overrides.get("moderator", False)
    interaction.user.guild_permissions.manage_guild = overrides.get("manager", False)
    interaction.user.guild_permissions.administrator = overrides.get("admin", False)
    interaction.guild_id = overrides.get("guild_id", 1)
    interaction.client = MagicMock()
    return interaction


def make_watch(status: WatchStatus = WatchStatus.PENDING, **overrides) -> Watch:
    data = {
        "id": "0f8fad5b-d9cb-469f-a165-70867728950e",
        "guild_id": 1,
        "channel_id": 100,
        "accused_user_id": 42,
        "initiator_user_id": 7,
        "original_message_id": 555,
        "scheduled_at": NOW + timedelta(minutes=5),
        "created_at": NOW,
        "status": status,
    }
    data.update(overrides)
    return Watch(**data)


def sent_text(interaction: AsyncMock) -> str:
    call = interaction.response.send_message.call_args
    if call.args:
        return str(call.args[0])
    embed = call.kwargs.get("embed")
    if embed is not None:
        return f"{embed.title} {embed.description}"
    return str(call.kwargs.get("content", ""))


@pytest.fixture
def settings_discord_enabled() -> Settings:
    """Settings with Discord enabled."""
    return Settings(
        ratwatch_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        discord_bot_token="test-token-not-real",
        discord_enabled=True,
    )


@pytest.fixture
def mock_service() -> MagicMock:
    service = MagicMock(spec=WatchService)
    service.has_active_watches = AsyncMock(return_value=False)
    service.set_voting_message_id = AsyncMock()
    return service


@pytest.fixture
def bot(settings_discord_enabled: Settings, mock_service: MagicMock) -> RatWatchBot:
    bot = RatWatchBot(settings=settings_discord_enabled, bus=NotificationBus(), service=mock_service)
    bot.change_presence = AsyncMock()
    return bot


# ---------------------------------------------------------------------------
# is_discord_enabled
# ---------------------------------------------------------------------------


class TestIsDiscordEnabled:
    def test_enabled_with_token(self, settings_discord_enabled: Settings) -> None:
        assert is_discord_enabled(settings_discord_enabled) is True

    def test_disabled_when_flag_false(self) -> None:
        settings = Settings(discord_bot_token="some-token", discord_enabled=False)
        assert is_discord_enabled(settings) is False

    def test_disabled_when_token_empty(self) -> None:
        settings = Settings(discord_bot_token="", discord_enabled=True)
        assert is_discord_enabled(settings) is False


# ---------------------------------------------------------------------------
# Bot construction
# ---------------------------------------------------------------------------


class TestRatWatchBotInit:
    def test_has_commands(self, bot: RatWatchBot) -> None:
        names = {cmd.name for cmd in bot.tree.get_commands()}
        assert {"rat-clear", "rat-cancel", "rat-settings"} <= names
        menus = bot.tree.get_commands(type=discord.AppCommandType.message)
        assert [menu.name for menu in menus] == ["Rat Watch"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_duplicate_error_mentions_existing_watch(self) -> None:
        outcome = WatchOutcome.failure(
            "duplicate_watch", "Already watching.", existing_watch_id="abcdef0123456789"
        )
        assert outcome.error is not None
        assert error_title(outcome.error) == "Already Watching"
        assert describe_error(outcome.error) == "Already watching. (watch `abcdef0123456789`)"

    def test_blank_message_uses_fallback(self) -> None:
        outcome = WatchOutcome.failure("wrong_user", "")
        assert outcome.error is not None
        assert describe_error(outcome.error) == "You're not the subject of this watch."

    def test_vote_custom_id(self) -> None:
        assert vote_custom_id("w-1", True) == "ratwatch:vote:w-1:guilty"
        assert vote_custom_id("w-1", False) == "ratwatch:vote:w-1:notguilty"

    def test_watch_choice_label(self) -> None:
        watch = make_watch()
        assert watch_choice_label(watch) == "user 42 · 2025-01-01 12:05 UTC · pending"
        assert watch_choice_label(watch, "Ratty").startswith("Ratty · ")
        assert len(watch_choice_label(watch, "x" * 200)) == 100


# ---------------------------------------------------------------------------
# Embed builders
# ---------------------------------------------------------------------------


class TestEmbeds:
    def test_created_embed_links_original_message(self) -> None:
        embed = build_watch_created_embed(make_watch(custom_message="brb 5 min"))
        assert "<@42>" in embed.description
        assert "brb 5 min" in embed.description
        assert "https://discord.com/channels/1/100/555" in embed.description

    def test_voting_embed_with_tally(self) -> None:
        watch = make_watch(WatchStatus.VOTING, voting_ended_at=NOW + timedelta(minutes=10))
        embed = build_voting_embed(watch, VoteTally(watch_id=watch.id, guilty_count=2))
        assert "Voting closes" in embed.description
        assert [f.value for f in embed.fields] == ["2", "0"]

    def test_guilty_verdict(self) -> None:
        watch = make_watch(WatchStatus.GUILTY)
        embed = build_verdict_embed(watch, VoteTally(watch_id=watch.id, guilty_count=2, not_guilty_count=1))
        assert embed.color is not None
        assert embed.color.value == COLOR_GUILTY
        assert "RAT" in (embed.title or "")

    def test_no_vote_verdict(self) -> None:
        embed = build_verdict_embed(make_watch(WatchStatus.NOT_GUILTY), None)
        assert embed.color is not None
        assert embed.color.value == COLOR_CLEARED
        assert "Nobody voted" in (embed.description or "")

    def test_cleared_embed_plural(self) -> None:
        assert "2 active Rat Watches" in (build_cleared_embed(2).description or "")
        assert "No Active" in (build_cleared_embed(0).title or "")

    def test_error_embed(self) -> None:
        assert build_error_embed("Oops", "bad").title == "❌ Oops"

    def test_created_embed_shows_full_watch_id(self) -> None:
        watch = make_watch()
        embed = build_watch_created_embed(watch)
        assert embed.footer.text is not None
        assert embed.footer.text.endswith(f"Watch ID: {watch.id}")

    def test_settings_embed(self) -> None:
        settings = GuildWatchSettings(
            guild_id=1, timezone="Europe/London", voting_duration_minutes=10, is_enabled=False
        )
        embed = build_settings_embed(settings, updated=True)
        assert [f.value for f in embed.fields] == ["Europe/London", "24h", "10 min", "No"]
        assert embed.footer.text == "Settings updated!"


# ---------------------------------------------------------------------------
# Buttons and views
# ---------------------------------------------------------------------------


class TestViews:
    async def test_vote_view_buttons(self) -> None:
        view = VoteView("w-1")
        assert [item.custom_id for item in view.children] == [
            "ratwatch:vote:w-1:guilty",
            "ratwatch:vote:w-1:notguilty",
        ]
        assert view.timeout is None

    async def test_check_in_view(self) -> None:
        view = CheckInView("w-1")
        assert [item.custom_id for item in view.children] == ["ratwatch:checkin:w-1"]

    async def test_vote_button_from_custom_id(self) -> None:
        template = VoteButton.__discord_ui_compiled_template__
        match = re.fullmatch(template, "ratwatch:vote:0f8fad5b-d9cb:notguilty")
        assert match is not None
        button = await VoteButton.from_custom_id(make_interaction(), MagicMock(), match)
        assert button.watch_id == "0f8fad5b-d9cb"
        assert button.is_guilty is False


class TestVoteHandling:
    async def _voting_watch(self, service: WatchService, clock: ManualClock) -> Watch:
        outcome = await service.create_watch(1, 42, 7, clock.now() + timedelta(minutes=5))
        assert outcome.watch is not None
        clock.set(outcome.watch.scheduled_at)
        await tick_watches(service.engine, clock)
        clock.advance(minutes=1)
        return outcome.watch

    async def test_vote_recorded(self, service: WatchService, clock: ManualClock) -> None:
        watch = await self._voting_watch(service, clock)
        interaction = make_interaction(user_id=900)
        await handle_vote(interaction, service, watch.id, True)

        assert "Your vote has been recorded" in sent_text(interaction)
        assert interaction.response.send_message.call_args.kwargs["ephemeral"] is True
        assert (await service.get_tally(watch.id)).guilty_count == 1

    async def test_button_callback_uses_client_service(
        self, service: WatchService, clock: ManualClock
    ) -> None:
        watch = await self._voting_watch(service, clock)
        interaction = make_interaction(user_id=900)
        interaction.client.service = service

        await VoteButton(watch.id, is_guilty=False).callback(interaction)

        assert (await service.get_tally(watch.id)).not_guilty_count == 1

    async def test_vote_on_pending_watch(self, service: WatchService, clock: ManualClock) -> None:
        outcome = await service.create_watch(1, 42, 7, clock.now() + timedelta(minutes=5))
        assert outcome.watch is not None
        interaction = make_interaction()
        await handle_vote(interaction, service, outcome.watch.id, True)
        assert "Can't Do That Now" in sent_text(interaction)

    async def test_storage_unavailable(self) -> None:
        service = MagicMock(spec=WatchService)
        service.cast_vote = AsyncMock(side_effect=StorageUnavailableError("locked"))
        interaction = make_interaction()
        await handle_vote(interaction, service, "w-1", True)
        assert sent_text(interaction) == STORAGE_UNAVAILABLE_TEXT

    async def test_check_in_wrong_user(self, service: WatchService, clock: ManualClock) -> None:
        outcome = await service.create_watch(1, 42, 7, clock.now() + timedelta(minutes=5))
        assert outcome.watch is not None
        interaction = make_interaction(user_id=7)
        await handle_check_in(interaction, service, outcome.watch.id)
        assert "Not Your Watch" in sent_text(interaction)

    async def test_check_in(self, service: WatchService, clock: ManualClock) -> None:
        outcome = await service.create_watch(1, 42, 7, clock.now() + timedelta(minutes=5))
        assert outcome.watch is not None
        interaction = make_interaction(user_id=42)
        await handle_check_in(interaction, service, outcome.watch.id)
        assert "Not a rat" in sent_text(interaction)


class TestCreateWatchModal:
    def _target(self) -> MagicMock:
        message = MagicMock(spec=discord.Message)
        message.id = 555
        message.author = MagicMock()
        message.author.id = 42
        message.author.bot = False
        message.channel = MagicMock()
        message.channel.id = 100
        return message

    async def test_creates_watch(self, service: WatchService, clock: ManualClock) -> None:
        modal = CreateWatchModal(service=service, target=self._target())
        modal.when = MagicMock(value="10m")
        modal.note = MagicMock(value="back in 10")
        interaction = make_interaction(user_id=7)

        await modal.on_submit(interaction)

        kwargs = interaction.response.send_message.call_args.kwargs
        assert isinstance(kwargs["view"], CheckInView)
        watches, total = await service.list_for_guild(1)
        assert total == 1
        assert watches[0].scheduled_at == clock.now() + timedelta(minutes=10)
        assert watches[0].original_message_link == "https://discord.com/channels/1/100/555"
        assert watches[0].custom_message == "back in 10"

    async def test_bad_time(self, service: WatchService) -> None:
        modal = CreateWatchModal(service=service, target=self._target())
        modal.when = MagicMock(value="whenever")
        modal.note = MagicMock(value="")
        interaction = make_interaction(user_id=7)

        await modal.on_submit(interaction)

        assert "Invalid Time Format" in sent_text(interaction)
        assert (await service.list_for_guild(1))[1] == 0


# ---------------------------------------------------------------------------
# Slash command handlers
# ---------------------------------------------------------------------------


class TestSlashCommands:
    async def test_context_menu_rejects_bots(self, bot: RatWatchBot) -> None:
        message = MagicMock(spec=discord.Message)
        message.author = MagicMock()
        message.author.bot = True
        interaction = make_interaction()
        await bot._handle_create(interaction, message)
        assert "Cannot Watch Bots" in sent_text(interaction)
        interaction.response.send_modal.assert_not_called()

    async def test_context_menu_opens_modal(self, bot: RatWatchBot) -> None:
        message = MagicMock(spec=discord.Message)
        message.author = MagicMock()
        message.author.bot = False
        interaction = make_interaction()
        await bot._handle_create(interaction, message)
        modal = interaction.response.send_modal.call_args.args[0]
        assert isinstance(modal, CreateWatchModal)

    async def test_clear(self, bot: RatWatchBot, mock_service: MagicMock) -> None:
        mock_service.check_in_all = AsyncMock(return_value=2)
        interaction = make_interaction(user_id=42, guild_id=9)
        await bot._handle_clear(interaction)
        mock_service.check_in_all.assert_awaited_once_with(9, 42)
        assert "Watches Cleared" in sent_text(interaction)

    async def test_cancel_passes_moderator_flag(
        self, bot: RatWatchBot, mock_service: MagicMock
    ) -> None:
        mock_service.cancel = AsyncMock(return_value=WatchOutcome.success(make_watch()))
        interaction = make_interaction(user_id=3, moderator=True)
        await bot._handle_cancel(interaction, " w-1 ")
        mock_service.cancel.assert_awaited_once_with("w-1", 3, is_moderator=True)
        assert "cancelled" in sent_text(interaction)

    async def test_cancel_error(self, bot: RatWatchBot, mock_service: MagicMock) -> None:
        mock_service.cancel = AsyncMock(
            return_value=WatchOutcome.failure("not_found", "That Rat Watch doesn't exist.")
        )
        interaction = make_interaction()
        await bot._handle_cancel(interaction, "nope")
        assert "Watch Not Found" in sent_text(interaction)

    async def test_cancel_with_id_from_created_embed(
        self, settings_discord_enabled: Settings, service: WatchService
    ) -> None:
        bot = RatWatchBot(settings=settings_discord_enabled, bus=NotificationBus(), service=service)
        modal = CreateWatchModal(service=service, target=TestCreateWatchModal()._target())
        modal.when = MagicMock(value="10m")
        modal.note = MagicMock(value="")
        created = make_interaction(user_id=7)
        await modal.on_submit(created)
        footer = created.response.send_message.call_args.kwargs["embed"].footer.text
        match = re.search(r"Watch ID: (\S+)$", footer)
        assert match is not None

        interaction = make_interaction(user_id=7)
        await bot._handle_cancel(interaction, match.group(1))

        assert sent_text(interaction) == "Rat Watch cancelled."
        watches, _ = await service.list_for_guild(1)
        assert watches[0].status == WatchStatus.CANCELLED

    async def test_cancel_autocomplete_offers_full_ids(
        self, settings_discord_enabled: Settings, service: WatchService, clock: ManualClock
    ) -> None:
        bot = RatWatchBot(settings=settings_discord_enabled, bus=NotificationBus(), service=service)
        first = await service.create_watch(1, 42, 7, clock.now() + timedelta(minutes=5))
        second = await service.create_watch(1, 43, 7, clock.now() + timedelta(minutes=30))
        await service.create_watch(2, 44, 7, clock.now() + timedelta(minutes=5))
        assert first.watch is not None
        assert second.watch is not None
        interaction = make_interaction()
        interaction.guild = None

        choices = await bot._autocomplete_watches(interaction, "")
        assert {c.value for c in choices} == {first.watch.id, second.watch.id}
        assert all(c.name.startswith("user ") for c in choices)

        narrowed = await bot._autocomplete_watches(interaction, first.watch.id[:8])
        assert [c.value for c in narrowed] == [first.watch.id]

    async def test_cancel_autocomplete_storage_unavailable(
        self, bot: RatWatchBot, mock_service: MagicMock
    ) -> None:
        mock_service.get_active_watches_for_guild = AsyncMock(
            side_effect=StorageUnavailableError("locked")
        )
        assert await bot._autocomplete_watches(make_interaction(), "") == []


class TestSettingsCommand:
    async def test_requires_manage_guild(self, bot: RatWatchBot, mock_service: MagicMock) -> None:
        mock_service.update_guild_settings = AsyncMock()
        interaction = make_interaction(moderator=True)
        await bot._handle_settings(interaction, timezone="Europe/London")
        assert "Not Allowed" in sent_text(interaction)
        mock_service.update_guild_settings.assert_not_called()

    async def test_view_without_options(
        self, settings_discord_enabled: Settings, service: WatchService
    ) -> None:
        bot = RatWatchBot(settings=settings_discord_enabled, bus=NotificationBus(), service=service)
        interaction = make_interaction(admin=True)
        await bot._handle_settings(interaction)
        kwargs = interaction.response.send_message.call_args.kwargs
        assert kwargs["ephemeral"] is True
        assert [f.value for f in kwargs["embed"].fields] == ["UTC", "24h", "5 min", "Yes"]

    async def test_update_routes_through_service(
        self, settings_discord_enabled: Settings, service: WatchService
    ) -> None:
        bot = RatWatchBot(settings=settings_discord_enabled, bus=NotificationBus(), service=service)
        interaction = make_interaction(manager=True, guild_id=1)
        await bot._handle_settings(
            interaction, timezone="America/New_York", voting_minutes=10, enabled=False
        )

        embed = interaction.response.send_message.call_args.kwargs["embed"]
        assert embed.footer.text == "Settings updated!"
        stored = await service.get_guild_settings(1)
        assert stored.timezone == "America/New_York"
        assert stored.voting_duration_minutes == 10
        assert stored.is_enabled is False

    async def test_invalid_timezone(
        self, settings_discord_enabled: Settings, service: WatchService
    ) -> None:
        bot = RatWatchBot(settings=settings_discord_enabled, bus=NotificationBus(), service=service)
        interaction = make_interaction(manager=True)
        await bot._handle_settings(interaction, timezone="Mars/Olympus")
        assert "Invalid Setting" in sent_text(interaction)
        assert (await service.get_guild_settings(1)).timezone == "UTC"

    async def test_voting_minutes_out_of_range(
        self, bot: RatWatchBot, mock_service: MagicMock
    ) -> None:
        mock_service.update_guild_settings = AsyncMock()
        interaction = make_interaction(manager=True)
        await bot._handle_settings(interaction, voting_minutes=61)
        assert "Invalid Setting" in sent_text(interaction)
        mock_service.update_guild_settings.assert_not_called()

    async def test_outside_guild(self, bot: RatWatchBot) -> None:
        interaction = make_interaction(manager=True)
        interaction.guild_id = None
        await bot._handle_settings(interaction)
        assert "only works inside a server" in sent_text(interaction)


# ---------------------------------------------------------------------------
# Notification dispatch
# ---------------------------------------------------------------------------


class TestNotificationDispatch:
    async def test_voting_opened_posts_ballot(
        self, bot: RatWatchBot, mock_service: MagicMock
    ) -> None:
        channel = AsyncMock(spec=discord.TextChannel)
        channel.send.return_value = MagicMock(id=777)
        bot.get_channel = MagicMock(return_value=channel)
        watch = make_watch(WatchStatus.VOTING, voting_ended_at=NOW + timedelta(minutes=10))

        await bot._dispatch_notification(
            WatchNotification(kind=NotificationKind.VOTING_OPENED, watch=watch)
        )

        bot.get_channel.assert_called_once_with(100)
        assert isinstance(channel.send.call_args.kwargs["view"], VoteView)
        mock_service.set_voting_message_id.assert_awaited_once_with(watch.id, 777)
        bot.change_presence.assert_awaited()

    async def test_verdict_edits_voting_message(self, bot: RatWatchBot) -> None:
        channel = AsyncMock(spec=discord.TextChannel)
        partial = MagicMock()
        partial.edit = AsyncMock()
        channel.get_partial_message = MagicMock(return_value=partial)
        bot.get_channel = MagicMock(return_value=channel)
        watch = make_watch(WatchStatus.GUILTY, voting_message_id=777)

        await bot._dispatch_notification(
            WatchNotification(
                kind=NotificationKind.VERDICT_ANNOUNCED,
                watch=watch,
                tally=VoteTally(watch_id=watch.id, guilty_count=2, not_guilty_count=1),
            )
        )

        channel.get_partial_message.assert_called_once_with(777)
        assert partial.edit.call_args.kwargs["view"] is None
        channel.send.assert_not_called()

    async def test_verdict_without_voting_message_is_sent(self, bot: RatWatchBot) -> None:
        channel = AsyncMock(spec=discord.TextChannel)
        bot.get_channel = MagicMock(return_value=channel)
        await bot._dispatch_notification(
            WatchNotification(
                kind=NotificationKind.VERDICT_ANNOUNCED, watch=make_watch(WatchStatus.NOT_GUILTY)
            )
        )
        channel.send.assert_called_once()

    async def test_checked_in(self, bot: RatWatchBot) -> None:
        channel = AsyncMock(spec=discord.TextChannel)
        bot.get_channel = MagicMock(return_value=channel)
        watch = make_watch(WatchStatus.CLEARED_EARLY, cleared_at=NOW + timedelta(minutes=1))
        await bot._dispatch_notification(
            WatchNotification(kind=NotificationKind.CHECKED_IN, watch=watch)
        )
        embed = channel.send.call_args.kwargs["embed"]
        assert embed.title == "✅ Checked In"

    async def test_accused_gets_dm(self, bot: RatWatchBot) -> None:
        user = AsyncMock()
        bot.get_user = MagicMock(return_value=user)
        await bot._dispatch_notification(
            WatchNotification(
                kind=NotificationKind.ACCUSED_NOTIFIED, watch=make_watch(WatchStatus.GUILTY)
            )
        )
        user.send.assert_awaited_once()

    async def test_dm_forbidden_is_swallowed(self, bot: RatWatchBot) -> None:
        user = AsyncMock()
        user.send.side_effect = discord.Forbidden(MagicMock(status=403), "Cannot send messages")
        bot.get_user = MagicMock(return_value=user)
        await bot._dispatch_notification(
            WatchNotification(
                kind=NotificationKind.ACCUSED_NOTIFIED, watch=make_watch(WatchStatus.GUILTY)
            )
        )

    async def test_missing_channel(self, bot: RatWatchBot) -> None:
        bot.get_channel = MagicMock(return_value=None)
        await bot._dispatch_notification(
            WatchNotification(kind=NotificationKind.CHECKED_IN, watch=make_watch())
        )
        bot.change_presence.assert_not_called()

    async def test_presence_reflects_active_watches(
        self, bot: RatWatchBot, mock_service: MagicMock
    ) -> None:
        mock_service.has_active_watches = AsyncMock(return_value=True)
        await bot._refresh_presence()
        activity = bot.change_presence.call_args.kwargs["activity"]
        assert activity.type == discord.ActivityType.watching


# ---------------------------------------------------------------------------
# start_discord_bot
# ---------------------------------------------------------------------------


class TestStartDiscordBot:
    async def test_start_creates_task(
        self, settings_discord_enabled: Settings, mock_service: MagicMock
    ) -> None:
        with patch.object(RatWatchBot, "start", new_callable=AsyncMock) as mock_start:
            bot = await start_discord_bot(settings_discord_enabled, NotificationBus(), mock_service)
            assert isinstance(bot, RatWatchBot)
            assert bot.runner_task is not None
            # Give the task a moment to start
            await asyncio.sleep(0.05)
            mock_start.assert_called_once_with("test-token-not-real")
            await bot.close()

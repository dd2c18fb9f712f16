"""Discord bot helpers: error text, component custom IDs and choice labels."""

from __future__ import annotations

from ratwatch.models.outcomes import WatchError, WatchErrorKind
from ratwatch.models.watch import Watch

_ERROR_TITLES: dict[WatchErrorKind, str] = {
    "duplicate_watch": "Already Watching",
    "not_found": "Watch Not Found",
    "wrong_user": "Not Your Watch",
    "invalid_state": "Can't Do That Now",
    "invalid_schedule": "Invalid Time",
}

_ERROR_FALLBACKS: dict[WatchErrorKind, str] = {
    "duplicate_watch": "A watch on this user is already active.",
    "not_found": "That Rat Watch doesn't exist.",
    "wrong_user": "You're not the subject of this watch.",
    "invalid_state": "This watch can't do that right now.",
    "invalid_schedule": "That time can't be used for a Rat Watch.",
}

INVALID_TIME_HELP = (
    "Could not parse the time you provided. Use formats like:\n"
    "• `10m` - 10 minutes from now\n"
    "• `2h` - 2 hours from now\n"
    "• `1h30m` - 1 hour 30 minutes\n"
    "• `10pm` - 10 PM today\n"
    "• `22:00` - 10 PM today (24-hour)"
)


def error_title(error: WatchError) -> str:
    return _ERROR_TITLES.get(error.kind, "Error")


def describe_error(error: WatchError) -> str:
    """User-facing text for a watch operation failure."""
    message = error.message or _ERROR_FALLBACKS.get(error.kind, "Something went wrong.")
    if error.kind == "duplicate_watch" and error.existing_watch_id:
        message += f" (watch `{error.existing_watch_id}`)"
    return message


def vote_custom_id(watch_id: str, is_guilty: bool) -> str:
    return f"ratwatch:vote:{watch_id}:{'guilty' if is_guilty else 'notguilty'}"


def check_in_custom_id(watch_id: str) -> str:
    return f"ratwatch:checkin:{watch_id}"


def watch_choice_label(watch: Watch, accused_name: str | None = None) -> str:
    """Autocomplete label for a watch: who, when, and its status."""
    who = accused_name or f"user {watch.accused_user_id}"
    when = watch.scheduled_at.strftime("%Y-%m-%d %H:%M UTC")
    return f"{who} · {when} · {watch.status.value}"[:100]

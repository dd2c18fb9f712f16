"""Discord bot integration for Rat Watch.

The bot runs in-process with FastAPI, sharing the same event loop.
It subscribes to the NotificationBus and posts voting prompts, verdicts,
check-ins and cancellations to the channel each watch was raised in.

Optional: if DISCORD_BOT_TOKEN is not set, the app runs without Discord.
"""

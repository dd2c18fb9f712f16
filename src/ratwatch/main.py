"""FastAPI application factory."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ratwatch.api.watches import router as watches_router
from ratwatch.config import Settings
from ratwatch.core.clock import Clock, SystemClock
from ratwatch.core.notifier import NotificationBus
from ratwatch.core.scheduler_runner import WatchTicker
from ratwatch.core.service import WatchService
from ratwatch.db.engine import StorageUnavailableError, create_engine, create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: create engine/tables, start the scheduler and optionally the Discord bot."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_tables(engine)

    clock = app.state.clock
    bus = NotificationBus()
    service = WatchService(engine, clock=clock, notifier=bus, settings=settings)
    app.state.engine = engine
    app.state.notification_bus = bus
    app.state.service = service

    # Start Discord bot if configured
    discord_bot = None
    from ratwatch.discord.bot import is_discord_enabled

    if is_discord_enabled(settings):
        from ratwatch.discord.bot import start_discord_bot

        # The bot replays undelivered side effects once it is listening.
        discord_bot = await start_discord_bot(settings, bus, service)
        app.state.discord_bot = discord_bot
        logger.info("discord_bot_integration_started")
    else:
        logger.info("discord_bot_integration_disabled")
        await service.recover_side_effects()

    # Start APScheduler for deadline-driven watch advancement
    scheduler = None
    ticker = WatchTicker(
        engine,
        clock,
        bus,
        guild_defaults=settings.guild_defaults(),
        max_concurrent=settings.ratwatch_max_concurrent_executions,
        timeout_seconds=settings.ratwatch_execution_timeout_seconds,
    )
    app.state.ticker = ticker
    if settings.ratwatch_auto_advance:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.interval import IntervalTrigger

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            ticker.tick,
            trigger=IntervalTrigger(seconds=settings.ratwatch_check_interval_seconds),
            id="tick_watches",
            name="Advance due Rat Watches",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info(
            "scheduler_started interval_seconds=%d",
            settings.ratwatch_check_interval_seconds,
        )
    else:
        app.state.scheduler = None
        logger.info("scheduler_disabled")

    yield

    await shutdown(app)


async def shutdown(app: FastAPI) -> None:
    """Stop the scheduler, bot and engine, letting the running tick finish first.

    APScheduler cancels a running job on shutdown, so the ticker is drained
    before the scheduler is stopped.
    """
    settings: Settings = app.state.settings
    scheduler = app.state.scheduler
    if scheduler is not None:
        scheduler.pause()
    try:
        await asyncio.wait_for(
            app.state.ticker.drain(), timeout=settings.ratwatch_shutdown_grace_seconds
        )
    except TimeoutError:
        logger.warning(
            "scheduler_drain_timeout grace_seconds=%d", settings.ratwatch_shutdown_grace_seconds
        )
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    discord_bot = getattr(app.state, "discord_bot", None)
    if discord_bot is not None:
        await discord_bot.close()
        logger.info("discord_bot_integration_stopped")

    await app.state.engine.dispose()


def create_app(settings: Settings | None = None, clock: Clock | None = None) -> FastAPI:
    """Create and configure the Rat Watch FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.ratwatch_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Rat Watch",
        version="0.1.0",
        description="Timed, crowd-voted accountability watches for Discord servers",
        docs_url="/docs" if settings.ratwatch_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.clock = clock or SystemClock()

    app.include_router(watches_router)

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable_handler(
        request: Request,  # noqa: ARG001
        exc: StorageUnavailableError,
    ) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.ratwatch_env}

    return app


app = create_app()

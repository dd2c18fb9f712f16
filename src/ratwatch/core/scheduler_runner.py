"""Scheduled watch advancement.

Provides ``tick_watches`` which is invoked by APScheduler every
``settings.ratwatch_check_interval_seconds``. Each tick finds Pending watches
whose scheduled time has passed (opening their vote) and Voting watches whose
voting window has closed (tallying and recording a verdict), and advances each
one independently.

Every advance runs in its own transaction that starts by claiming the watch
with a conditional update, so two ticks (or two processes) racing on the same
watch cannot both advance it. A watch that is no longer in the expected status
is skipped. A failure on one watch is logged and never stops the rest of the
tick. Side effects of a committed advance run in their own task, so they are
delivered even when the tick is cancelled.

``WatchTicker`` is the scheduled job: it serializes ticks and lets shutdown
wait for the running one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ratwatch.core import vote_ledger
from ratwatch.core.clock import Clock
from ratwatch.core.notifier import Notifier
from ratwatch.core.side_effects import deliver_side_effects
from ratwatch.core.state_machine import Rejection, SideEffect, deadline_reached, transition
from ratwatch.db.engine import StorageUnavailableError, get_session
from ratwatch.db.repository import WatchStore
from ratwatch.models.watch import VoteTally, Watch, WatchStatus

logger = logging.getLogger(__name__)


class AdvanceResult(StrEnum):
    OPENED = "opened"
    FINALIZED = "finalized"
    SKIPPED = "skipped"


@dataclass
class TickSummary:
    opened: int = 0
    finalized: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.opened + self.finalized + self.skipped + self.failed


# Side-effect deliveries still running. Held here so they are not garbage
# collected after the tick that started them is cancelled.
_deliveries: set[asyncio.Task[None]] = set()


async def _deliver_shielded(
    engine: AsyncEngine,
    notifier: Notifier | None,
    watch: Watch,
    effects: tuple[SideEffect, ...],
    tally: VoteTally | None,
) -> None:
    """Deliver side effects of a committed transition in their own task.

    Cancelling the caller (a per-watch timeout, scheduler shutdown) does not
    cut the delivery short.
    """
    task = asyncio.create_task(
        deliver_side_effects(engine, notifier, watch, effects, tally),
        name=f"ratwatch-side-effects-{watch.id}",
    )
    _deliveries.add(task)
    task.add_done_callback(_deliveries.discard)
    await asyncio.shield(task)


async def wait_for_deliveries() -> None:
    """Wait until every side-effect delivery in flight has finished."""
    if _deliveries:
        await asyncio.wait(set(_deliveries))


async def advance_watch(
    engine: AsyncEngine,
    watch_id: str,
    expected_status: WatchStatus,
    clock: Clock,
    notifier: Notifier | None = None,
    *,
    guild_defaults: dict[str, Any] | None = None,
) -> AdvanceResult:
    """Apply the deadline transition to one watch, then run its side effects.

    Returns SKIPPED when the watch was already advanced elsewhere or is not
    yet due. *guild_defaults* seeds the guild settings row if it is missing.
    """
    tally: VoteTally | None = None
    async with get_session(engine) as session:
        store = WatchStore(session)
        if not await store.claim_watch(watch_id, expected_status):
            logger.debug("watch_advance_skipped watch=%s reason=already_advanced", watch_id)
            return AdvanceResult.SKIPPED

        row = await store.get_watch(watch_id)
        if row is None:
            return AdvanceResult.SKIPPED
        watch = Watch.model_validate(row)
        now = clock.now()

        if expected_status == WatchStatus.VOTING:
            tally = await vote_ledger.tally(store, watch_id)
            result = transition(watch, deadline_reached(tally), now)
        else:
            guild = await store.get_guild_settings(
                watch.guild_id, now=now, defaults=guild_defaults
            )
            voting_duration = timedelta(minutes=guild.voting_duration_minutes)
            result = transition(watch, deadline_reached(), now, voting_duration)
        if isinstance(result, Rejection):
            logger.debug(
                "watch_advance_skipped watch=%s reason=%s",
                watch_id,
                result.reason.value,
            )
            return AdvanceResult.SKIPPED

        if not await store.conditional_update_status(
            watch_id, result.from_status, result.to_status, **result.fields
        ):
            return AdvanceResult.SKIPPED

    updated = watch.model_copy(update={"status": result.to_status, **result.fields})
    if result.to_status == WatchStatus.VOTING:
        logger.info(
            "watch_voting_opened watch=%s guild=%s accused=%s ends_at=%s",
            watch_id,
            watch.guild_id,
            watch.accused_user_id,
            updated.voting_ended_at.isoformat() if updated.voting_ended_at else None,
        )
    else:
        logger.info(
            "watch_finalized watch=%s guild=%s verdict=%s guilty=%d not_guilty=%d",
            watch_id,
            watch.guild_id,
            result.to_status.value,
            tally.guilty_count if tally else 0,
            tally.not_guilty_count if tally else 0,
        )

    await _deliver_shielded(engine, notifier, updated, result.side_effects, tally)
    if result.to_status == WatchStatus.VOTING:
        return AdvanceResult.OPENED
    return AdvanceResult.FINALIZED


async def tick_watches(
    engine: AsyncEngine,
    clock: Clock,
    notifier: Notifier | None = None,
    *,
    guild_defaults: dict[str, Any] | None = None,
    max_concurrent: int = 5,
    timeout_seconds: float = 30.0,
    stop_event: asyncio.Event | None = None,
) -> TickSummary:
    """Advance every watch whose deadline has passed.

    Called by APScheduler. Per-watch work runs concurrently, bounded by
    *max_concurrent* and *timeout_seconds*. Once *stop_event* is set, no new
    per-watch work starts; transitions already running finish.
    """
    summary = TickSummary()
    if stop_event is not None and stop_event.is_set():
        return summary

    now = clock.now()
    try:
        async with get_session(engine) as session:
            store = WatchStore(session)
            to_open = [row.id for row in await store.get_due_for_voting_open(now)]
            to_finalize = [row.id for row in await store.get_due_for_finalization(now)]
    except (StorageUnavailableError, SQLAlchemyError):
        logger.exception("tick_watches_fetch_error")
        return summary

    jobs = [(watch_id, WatchStatus.PENDING) for watch_id in to_open]
    jobs += [(watch_id, WatchStatus.VOTING) for watch_id in to_finalize]
    if not jobs:
        return summary

    semaphore = asyncio.Semaphore(max_concurrent)

    async def _run(watch_id: str, expected_status: WatchStatus) -> None:
        async with semaphore:
            if stop_event is not None and stop_event.is_set():
                summary.skipped += 1
                return
            try:
                result = await asyncio.wait_for(
                    advance_watch(
                        engine,
                        watch_id,
                        expected_status,
                        clock,
                        notifier,
                        guild_defaults=guild_defaults,
                    ),
                    timeout=timeout_seconds,
                )
            except TimeoutError:
                logger.error("watch_advance_timeout watch=%s timeout=%s", watch_id, timeout_seconds)
                summary.failed += 1
                return
            except (StorageUnavailableError, SQLAlchemyError):
                logger.exception("watch_advance_storage_error watch=%s", watch_id)
                summary.failed += 1
                return
            except Exception:  # Last-resort handler: one bad watch must not sink the tick
                logger.exception("watch_advance_error watch=%s", watch_id)
                summary.failed += 1
                return

            if result == AdvanceResult.OPENED:
                summary.opened += 1
            elif result == AdvanceResult.FINALIZED:
                summary.finalized += 1
            else:
                summary.skipped += 1

    await asyncio.gather(*(_run(watch_id, status) for watch_id, status in jobs))

    logger.info(
        "tick_watches_complete opened=%d finalized=%d skipped=%d failed=%d",
        summary.opened,
        summary.finalized,
        summary.skipped,
        summary.failed,
    )
    return summary


class WatchTicker:
    """Runs ticks one at a time and drains them at shutdown.

    APScheduler cancels a running job when it shuts down, so the app drains
    the ticker first. ``drain`` sets the stop event, then returns once the
    running tick and every side-effect delivery it started have finished.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        clock: Clock,
        notifier: Notifier | None = None,
        *,
        guild_defaults: dict[str, Any] | None = None,
        max_concurrent: int = 5,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.engine = engine
        self.clock = clock
        self.notifier = notifier
        self.guild_defaults = guild_defaults
        self.max_concurrent = max_concurrent
        self.timeout_seconds = timeout_seconds
        self.stop_event = asyncio.Event()
        self._running = asyncio.Lock()

    async def tick(self) -> TickSummary:
        async with self._running:
            return await tick_watches(
                self.engine,
                self.clock,
                self.notifier,
                guild_defaults=self.guild_defaults,
                max_concurrent=self.max_concurrent,
                timeout_seconds=self.timeout_seconds,
                stop_event=self.stop_event,
            )

    async def drain(self) -> None:
        self.stop_event.set()
        async with self._running:
            await wait_for_deliveries()
        logger.info("watch_ticker_drained")

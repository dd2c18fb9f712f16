"""Notification contract and the in-process notification bus.

The engine tells the outside world about watch transitions through a
``Notifier``. Delivery is fire-and-forget from the engine's point of view:
a notifier failure is logged by the caller and never undoes a transition.

``NotificationBus`` is the default notifier. Each subscriber (the Discord
bot, tests) gets its own asyncio.Queue; if nobody is listening, the
notification is dropped.

Usage:
    bus = NotificationBus()

    async with bus.subscribe() as sub:
        notification = await sub.get(timeout=1.0)

    await bus.notify(WatchNotification(kind=NotificationKind.VOTING_OPENED, watch=watch))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel

from ratwatch.models.watch import VoteTally, Watch

logger = logging.getLogger(__name__)


class NotificationKind(StrEnum):
    VOTING_OPENED = "voting_opened"
    VERDICT_ANNOUNCED = "verdict_announced"
    ACCUSED_NOTIFIED = "accused_notified"
    CHECKED_IN = "checked_in"
    CANCELLED = "cancelled"


class WatchNotification(BaseModel):
    """A watch snapshot taken right after a persisted transition."""

    kind: NotificationKind
    watch: Watch
    tally: VoteTally | None = None


class Notifier(Protocol):
    async def notify(self, notification: WatchNotification) -> None: ...


class NotificationBus:
    """Async pub/sub for watch notifications. Implements ``Notifier``."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[asyncio.Queue[WatchNotification], frozenset[str] | None]] = []

    async def notify(self, notification: WatchNotification) -> None:
        await self.publish(notification)

    async def publish(self, notification: WatchNotification) -> int:
        """Fan a notification out to every matching subscriber.

        Returns the number of subscribers that received it.
        """
        count = 0
        for queue, kinds in list(self._subscribers):
            if kinds is not None and notification.kind not in kinds:
                continue
            try:
                queue.put_nowait(notification)
                count += 1
            except asyncio.QueueFull:
                logger.warning(
                    "notification_dropped kind=%s watch=%s reason=slow_subscriber",
                    notification.kind.value,
                    notification.watch.id,
                )
        return count

    def subscribe(
        self,
        kinds: set[NotificationKind] | None = None,
        max_size: int = 100,
    ) -> NotificationSubscription:
        """Subscribe to some notification kinds (or all, if *kinds* is None).

        Use the returned subscription as an async context manager.
        """
        queue: asyncio.Queue[WatchNotification] = asyncio.Queue(maxsize=max_size)
        return NotificationSubscription(self, queue, frozenset(kinds) if kinds else None)

    def _register(
        self,
        queue: asyncio.Queue[WatchNotification],
        kinds: frozenset[str] | None,
    ) -> None:
        self._subscribers.append((queue, kinds))

    def _unregister(
        self,
        queue: asyncio.Queue[WatchNotification],
        kinds: frozenset[str] | None,
    ) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove((queue, kinds))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class NotificationSubscription:
    """An active bus subscription. Async context manager and async iterator."""

    def __init__(
        self,
        bus: NotificationBus,
        queue: asyncio.Queue[WatchNotification],
        kinds: frozenset[str] | None,
    ) -> None:
        self._bus = bus
        self._queue = queue
        self._kinds = kinds
        self._active = False

    async def __aenter__(self) -> NotificationSubscription:
        self._bus._register(self._queue, self._kinds)
        self._active = True
        return self

    async def __aexit__(self, *args: object) -> None:
        self._active = False
        self._bus._unregister(self._queue, self._kinds)

    def __aiter__(self) -> NotificationSubscription:
        return self

    async def __anext__(self) -> WatchNotification:
        if not self._active:
            raise StopAsyncIteration
        try:
            return await self._queue.get()
        except asyncio.CancelledError:
            raise StopAsyncIteration from None

    async def get(self, timeout: float | None = None) -> WatchNotification | None:
        """Next notification, or None on timeout."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None

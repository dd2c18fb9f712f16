"""Shared test fixtures."""

import pathlib
from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from ratwatch.config import Settings
from ratwatch.core.clock import ManualClock
from ratwatch.core.notifier import NotificationKind, WatchNotification
from ratwatch.core.service import WatchService
from ratwatch.db.engine import create_engine, create_tables


class RecordingNotifier:
    """Notifier that keeps everything it is sent."""

    def __init__(self) -> None:
        self.notifications: list[WatchNotification] = []

    async def notify(self, notification: WatchNotification) -> None:
        self.notifications.append(notification)

    @property
    def kinds(self) -> list[NotificationKind]:
        return [n.kind for n in self.notifications]


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults."""
    return Settings(ratwatch_env="development", database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with all tables."""
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
async def file_engine(tmp_path: pathlib.Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine, for tests that run transactions concurrently."""
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ratwatch.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def service(
    engine: AsyncEngine,
    clock: ManualClock,
    notifier: RecordingNotifier,
    settings: Settings,
) -> WatchService:
    return WatchService(engine, clock=clock, notifier=notifier, settings=settings)

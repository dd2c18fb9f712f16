"""Database engine and transactional sessions for the watch store.

Every unit of work goes through ``get_session``: one transaction, committed
when the block exits cleanly and rolled back otherwise. Lock contention and
unreachable files surface as ``StorageUnavailableError``, the only exception
the watch engine raises to its callers.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ratwatch.db.models import Base

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 15

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    f"PRAGMA busy_timeout={BUSY_TIMEOUT_SECONDS * 1000}",
    "PRAGMA foreign_keys=ON",
)


class StorageUnavailableError(Exception):
    """The watch store could not be reached or did not respond in time."""


def create_engine(database_url: str) -> AsyncEngine:
    """Engine for *database_url* with WAL, a busy timeout and foreign keys on.

    The scheduler tick, vote buttons and API reads share one file; a writer
    queues behind another writer for up to ``BUSY_TIMEOUT_SECONDS``.
    """
    engine = create_async_engine(
        database_url, echo=False, connect_args={"timeout": BUSY_TIMEOUT_SECONDS}
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _configure_connection(dbapi_conn: object, connection_record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    return engine


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for *engine*, built on first use and then reused."""
    key = id(engine.sync_engine)
    factory = _session_factories.get(key)
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[key] = factory
    return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on a clean exit, roll back on any error."""
    async with create_session_factory(engine)() as session:
        try:
            yield session
            await session.commit()
        except OperationalError as exc:
            await session.rollback()
            logger.warning("storage_unavailable error=%s", exc.orig)
            raise StorageUnavailableError(str(exc.orig)) from exc
        except Exception:
            await session.rollback()
            raise

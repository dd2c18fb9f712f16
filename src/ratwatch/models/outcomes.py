"""Typed results for Watch Service operations.

Expected failures (duplicate, wrong user, wrong state, ...) come back as a
``WatchOutcome`` carrying a ``WatchError`` rather than as exceptions, so
command handlers can branch on ``error.kind`` and pick a message.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from ratwatch.models.watch import Watch

WatchErrorKind = Literal[
    "duplicate_watch",
    "not_found",
    "wrong_user",
    "invalid_state",
    "invalid_schedule",
]


class WatchError(BaseModel):
    """An expected, recoverable failure of a watch operation."""

    kind: WatchErrorKind
    message: str
    watch_id: str | None = None
    existing_watch_id: str | None = None


class WatchOutcome(BaseModel):
    """Either the resulting Watch or the reason the operation was refused."""

    watch: Watch | None = None
    error: WatchError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, watch: Watch) -> WatchOutcome:
        return cls(watch=watch)

    @classmethod
    def failure(
        cls,
        kind: WatchErrorKind,
        message: str,
        *,
        watch: Watch | None = None,
        existing_watch_id: str | None = None,
    ) -> WatchOutcome:
        return cls(
            watch=watch,
            error=WatchError(
                kind=kind,
                message=message,
                watch_id=watch.id if watch else None,
                existing_watch_id=existing_watch_id,
            ),
        )

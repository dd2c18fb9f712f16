"""Read-only watch API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from ratwatch.api.deps import ServiceDep
from ratwatch.core.activity import last_activity_at
from ratwatch.models.watch import RatRecord, VoteTally, Watch

router = APIRouter(prefix="/api", tags=["watches"])


class WatchDetail(BaseModel):
    watch: Watch
    tally: VoteTally
    last_activity_at: datetime
    record: RatRecord | None = None


class WatchPage(BaseModel):
    items: list[Watch]
    total: int
    page: int
    page_size: int


@router.get("/watches/{watch_id}")
async def get_watch(watch_id: str, service: ServiceDep) -> WatchDetail:
    """A single watch with its current vote tally and, once guilty, its record."""
    outcome = await service.get(watch_id)
    if outcome.watch is None:
        raise HTTPException(status_code=404, detail="Watch not found")
    tally = await service.get_tally(watch_id)
    record = await service.get_record_for_watch(watch_id)
    return WatchDetail(
        watch=outcome.watch,
        tally=tally,
        last_activity_at=last_activity_at(outcome.watch),
        record=record,
    )


@router.get("/guilds/{guild_id}/watches")
async def list_guild_watches(
    guild_id: int,
    service: ServiceDep,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
) -> WatchPage:
    """A guild's watches, newest first."""
    items, total = await service.list_for_guild(guild_id, page=page, page_size=page_size)
    return WatchPage(items=items, total=total, page=page, page_size=page_size)

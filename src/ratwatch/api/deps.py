"""FastAPI dependency injection for the watch service."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from ratwatch.core.service import WatchService


async def get_service(request: Request) -> WatchService:
    """Get the watch service from app state."""
    return request.app.state.service


ServiceDep = Annotated[WatchService, Depends(get_service)]

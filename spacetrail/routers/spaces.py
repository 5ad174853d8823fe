"""Space inference API."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from spacetrail.ingest.space_locator import SpaceLocator
from spacetrail.models import Space

spaces_router = APIRouter(prefix="/api/spaces", tags=["spaces"])


def _get_locator(request: Request) -> SpaceLocator:
    locator = getattr(request.app.state, "space_locator", None)
    if not locator:
        raise HTTPException(status_code=503, detail="Space locator not initialized")
    return locator


@spaces_router.get("/infer", response_model=Space)
async def infer_space(request: Request, path: str = Query(..., min_length=1)):
    """Most specific non-archived space containing ``path``."""
    space = await _get_locator(request).locate(path)
    if not space:
        raise HTTPException(status_code=404, detail=f"No space contains {path}")
    return space

"""Infer which space a working directory belongs to."""
from __future__ import annotations

import logging

from spacetrail.db.repositories.spaces import SqliteSpaceRepository, normalize_space_path
from spacetrail.models import Space

logger = logging.getLogger("spacetrail.ingest")


class SpaceLocator:
    """Longest-path-prefix lookup over non-archived spaces."""

    def __init__(self, space_repo: SqliteSpaceRepository):
        self.space_repo = space_repo

    async def locate(self, path: str | None) -> Space | None:
        normalized = normalize_space_path(path)
        if normalized is None:
            return None
        candidates = await self.space_repo.find_by_path_prefix(normalized, include_archived=False)
        if not candidates:
            logger.debug(f"No space matches {normalized}")
            return None
        return candidates[0]

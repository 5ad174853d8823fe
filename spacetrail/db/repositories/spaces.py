"""SQLite implementation of the space (organizational) store."""
from __future__ import annotations

import os

import aiosqlite

from spacetrail.date_utils import utc_now_iso
from spacetrail.models import Space


def normalize_space_path(path: str | None) -> str | None:
    if not path or not path.strip():
        return None
    return os.path.normpath(path.strip())


class SqliteSpaceRepository:
    """Spaces with filesystem-path lookups."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, space_data: dict) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO spaces (id, name, path, parent_id, archived, created_at, last_active_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   name=excluded.name, path=excluded.path, parent_id=excluded.parent_id,
                   archived=excluded.archived, last_active_at=excluded.last_active_at
            """,
            (
                space_data["id"],
                space_data.get("name", ""),
                normalize_space_path(space_data.get("path")),
                space_data.get("parentId"),
                1 if space_data.get("archived") else 0,
                now,
                space_data.get("lastActiveAt") or now,
            ),
        )
        await self.db.commit()

    async def find_by_path_prefix(self, path: str, include_archived: bool = False) -> list[Space]:
        """Spaces whose path equals ``path`` or is one of its ancestors.

        ``path`` must already be normalized. Results are ordered most specific
        first (longest path), then most recently active. Prefix matching is
        done with ``substr`` rather than LIKE so ``_``/``%`` in directory
        names and ASCII case differences never produce false matches.
        """
        archived_filter = "" if include_archived else "AND archived = 0"
        query = f"""
            SELECT * FROM spaces
            WHERE path IS NOT NULL AND path != ''
              AND (
                  path = ?
                  OR substr(?, 1, length(path) + 1) = path || '/'
                  OR (path = '/' AND substr(?, 1, 1) = '/')
              )
              {archived_filter}
            ORDER BY length(path) DESC, last_active_at DESC
        """
        async with self.db.execute(query, (path, path, path)) as cur:
            rows = await cur.fetchall()
            return [self._row_to_model(r) for r in rows]

    def _row_to_model(self, row) -> Space:
        return Space(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            parentId=row["parent_id"],
            archived=bool(row["archived"]),
            lastActiveAt=row["last_active_at"] or "",
        )

"""In-memory transcript offsets shared by the startup sweep and the watcher worker."""
from __future__ import annotations

import asyncio
from pathlib import Path


class OffsetStore:
    """Maps transcript paths to the last consumed byte offset.

    All access goes through a single ``asyncio.Lock``. Offsets only move
    forward through ``advance``; ``reset`` is the explicit escape hatch for
    files that were truncated underneath us. Durability is provided by each
    session's ``lastFileOffset`` column, which seeds this store on startup.
    """

    def __init__(self) -> None:
        self._offsets: dict[str, int] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(path: Path | str) -> str:
        return str(path)

    async def get(self, path: Path | str) -> int:
        async with self._lock:
            return self._offsets.get(self._key(path), 0)

    async def advance(self, path: Path | str, offset: int) -> int:
        """Move the offset forward; lower values are ignored. Returns the stored offset."""
        key = self._key(path)
        async with self._lock:
            current = self._offsets.get(key, 0)
            if offset > current:
                self._offsets[key] = offset
                return offset
            return current

    async def reset(self, path: Path | str, offset: int) -> None:
        async with self._lock:
            self._offsets[self._key(path)] = max(0, offset)

    async def seed(self, offsets: dict[str, int]) -> int:
        """Bulk-load persisted offsets. Returns how many entries changed."""
        changed = 0
        async with self._lock:
            for path, offset in offsets.items():
                key = self._key(path)
                if offset > self._offsets.get(key, 0):
                    self._offsets[key] = offset
                    changed += 1
        return changed

    async def snapshot(self) -> dict[str, int]:
        async with self._lock:
            return dict(self._offsets)

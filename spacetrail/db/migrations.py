"""Database migration entry point.

SQLite is the only backend; callers go through here rather than importing
the DDL module directly.
"""
from __future__ import annotations

import logging

import aiosqlite

from spacetrail.db import sqlite_migrations

logger = logging.getLogger("spacetrail.db")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Run migrations on the provided database connection."""
    if not isinstance(db, aiosqlite.Connection):
        raise TypeError(f"Unsupported database connection type: {type(db)!r}")
    logger.info("Running SQLite migrations...")
    await sqlite_migrations.run_migrations(db)

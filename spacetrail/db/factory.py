"""Repository constructors bound to a database connection."""
from __future__ import annotations

import aiosqlite

from spacetrail.db.repositories import (
    SqliteActivityRepository,
    SqliteAgentSessionRepository,
    SqliteSpaceRepository,
)


def get_session_repository(db: aiosqlite.Connection) -> SqliteAgentSessionRepository:
    return SqliteAgentSessionRepository(db)


def get_activity_repository(db: aiosqlite.Connection) -> SqliteActivityRepository:
    return SqliteActivityRepository(db)


def get_space_repository(db: aiosqlite.Connection) -> SqliteSpaceRepository:
    return SqliteSpaceRepository(db)

"""Database schema creation and versioning.

All CREATE TABLE statements for the space and agent-activity stores.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("spacetrail.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Spaces (organizational units, read-only for ingestion) ─────
CREATE TABLE IF NOT EXISTS spaces (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    path            TEXT,
    parent_id       TEXT REFERENCES spaces(id) ON DELETE SET NULL,
    archived        INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    last_active_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_spaces_path ON spaces(path) WHERE path IS NOT NULL;

-- ── 2. Agent sessions ──────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_sessions (
    id                  TEXT PRIMARY KEY,
    agent_name          TEXT NOT NULL,
    started_at          TEXT NOT NULL,
    ended_at            TEXT,
    external_session_id TEXT UNIQUE,
    working_directory   TEXT,
    space_id            TEXT REFERENCES spaces(id) ON DELETE SET NULL,
    last_file_offset    INTEGER NOT NULL DEFAULT 0,
    total_activities    INTEGER NOT NULL DEFAULT 0,
    tasks_created       INTEGER NOT NULL DEFAULT 0,
    tasks_updated       INTEGER NOT NULL DEFAULT 0,
    tasks_completed     INTEGER NOT NULL DEFAULT 0,
    spaces_created      INTEGER NOT NULL DEFAULT 0,
    documents_created   INTEGER NOT NULL DEFAULT 0,
    metadata_json       TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_agent_sessions_agent ON agent_sessions(agent_name, started_at DESC);
CREATE INDEX IF NOT EXISTS idx_agent_sessions_offset ON agent_sessions(last_file_offset)
    WHERE external_session_id IS NOT NULL;

-- ── 3. Agent activity (append-only) ────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_activity (
    id             TEXT PRIMARY KEY,
    session_id     TEXT NOT NULL REFERENCES agent_sessions(id) ON DELETE CASCADE,
    agent_name     TEXT NOT NULL,
    activity_type  TEXT NOT NULL DEFAULT 'other',
    resource_type  TEXT NOT NULL DEFAULT 'other',
    resource_id    TEXT,
    description    TEXT,
    metadata_json  TEXT,
    timestamp      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_session ON agent_activity(session_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_activity_agent   ON agent_activity(agent_name, timestamp DESC);
"""


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
    await db.executescript(_TABLES)
    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")

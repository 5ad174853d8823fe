"""SQLite implementation of the agent session store."""
from __future__ import annotations

import json

import aiosqlite

from spacetrail.date_utils import utc_now_iso
from spacetrail.models import AgentSession

# Model field -> column, for the counters that callers may increment.
COUNTER_COLUMNS = {
    "totalActivities": "total_activities",
    "tasksCreated": "tasks_created",
    "tasksUpdated": "tasks_updated",
    "tasksCompleted": "tasks_completed",
    "spacesCreated": "spaces_created",
    "documentsCreated": "documents_created",
}


class SqliteAgentSessionRepository:
    """SQLite-backed agent sessions keyed by internal id and external session id.

    Write methods take ``commit=False`` so a caller can group several writes
    into one transaction and commit (or roll back) itself.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert(self, session: AgentSession, *, commit: bool = True) -> None:
        """Insert a new session. Raises aiosqlite.IntegrityError on a duplicate external id."""
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO agent_sessions (
                id, agent_name, started_at, ended_at, external_session_id,
                working_directory, space_id, last_file_offset,
                total_activities, tasks_created, tasks_updated, tasks_completed,
                spaces_created, documents_created, metadata_json,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session.id, session.agentName, session.startedAt, session.endedAt,
                session.externalSessionId, session.workingDirectory, session.linkedSpaceId,
                session.lastFileOffset,
                session.totalActivities, session.tasksCreated, session.tasksUpdated,
                session.tasksCompleted, session.spacesCreated, session.documentsCreated,
                json.dumps(session.metadata) if session.metadata else None,
                now, now,
            ),
        )
        if commit:
            await self.db.commit()

    async def update(self, session: AgentSession, *, commit: bool = True) -> None:
        await self.db.execute(
            """UPDATE agent_sessions SET
                agent_name = ?, started_at = ?, ended_at = ?, working_directory = ?, space_id = ?,
                last_file_offset = ?, total_activities = ?, tasks_created = ?,
                tasks_updated = ?, tasks_completed = ?, spaces_created = ?,
                documents_created = ?, metadata_json = ?, updated_at = ?
               WHERE id = ?""",
            (
                session.agentName, session.startedAt, session.endedAt, session.workingDirectory,
                session.linkedSpaceId, session.lastFileOffset, session.totalActivities,
                session.tasksCreated, session.tasksUpdated, session.tasksCompleted,
                session.spacesCreated, session.documentsCreated,
                json.dumps(session.metadata) if session.metadata else None,
                utc_now_iso(), session.id,
            ),
        )
        if commit:
            await self.db.commit()

    async def increment_counters(
        self, session_id: str, counters: dict[str, int], *, commit: bool = True,
    ) -> None:
        """Add deltas to counter columns in place, so concurrent batches sum instead of overwrite."""
        deltas = {COUNTER_COLUMNS[name]: value for name, value in counters.items() if value}
        if not deltas:
            return
        assignments = ", ".join(f"{column} = {column} + ?" for column in deltas)
        await self.db.execute(
            f"UPDATE agent_sessions SET {assignments}, updated_at = ? WHERE id = ?",
            (*deltas.values(), utc_now_iso(), session_id),
        )
        if commit:
            await self.db.commit()

    async def advance_offset(self, session_id: str, offset: int, *, commit: bool = True) -> None:
        await self.db.execute(
            """UPDATE agent_sessions
               SET last_file_offset = MAX(last_file_offset, ?), updated_at = ?
               WHERE id = ?""",
            (offset, utc_now_iso(), session_id),
        )
        if commit:
            await self.db.commit()

    async def reset_offset(self, session_id: str, offset: int, *, commit: bool = True) -> None:
        """Overwrite the offset, for transcripts that were truncated or rewritten."""
        await self.db.execute(
            "UPDATE agent_sessions SET last_file_offset = ?, updated_at = ? WHERE id = ?",
            (max(0, offset), utc_now_iso(), session_id),
        )
        if commit:
            await self.db.commit()

    async def set_ended(self, session_id: str, ended_at: str) -> None:
        await self.db.execute(
            "UPDATE agent_sessions SET ended_at = ?, updated_at = ? WHERE id = ?",
            (ended_at, utc_now_iso(), session_id),
        )
        await self.db.commit()

    async def get_by_id(self, session_id: str) -> AgentSession | None:
        async with self.db.execute(
            "SELECT * FROM agent_sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_model(row) if row else None

    async def get_by_external_id(self, external_session_id: str) -> AgentSession | None:
        async with self.db.execute(
            "SELECT * FROM agent_sessions WHERE external_session_id = ?",
            (external_session_id,),
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_model(row) if row else None

    async def latest_active(self, agent_name: str) -> AgentSession | None:
        async with self.db.execute(
            """SELECT * FROM agent_sessions
               WHERE agent_name = ? AND ended_at IS NULL
               ORDER BY started_at DESC LIMIT 1""",
            (agent_name,),
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_model(row) if row else None

    async def list(
        self, agent_name: str | None = None, active_only: bool = False, limit: int | None = 50,
    ) -> list[AgentSession]:
        """Newest first. ``limit=None`` returns every matching session."""
        clauses: list[str] = []
        params: list = []
        if agent_name:
            clauses.append("agent_name = ?")
            params.append(agent_name)
        if active_only:
            clauses.append("ended_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_sql = ""
        if limit is not None:
            limit_sql = "LIMIT ?"
            params.append(limit)
        async with self.db.execute(
            f"SELECT * FROM agent_sessions {where} ORDER BY started_at DESC {limit_sql}",
            tuple(params),
        ) as cur:
            return [self._row_to_model(r) for r in await cur.fetchall()]

    async def list_with_offsets(self) -> list[AgentSession]:
        """Transcript-backed sessions that have consumed at least one byte."""
        async with self.db.execute(
            """SELECT * FROM agent_sessions
               WHERE external_session_id IS NOT NULL AND last_file_offset > 0"""
        ) as cur:
            return [self._row_to_model(r) for r in await cur.fetchall()]

    async def delete_ended_before(self, cutoff: str) -> int:
        async with self.db.execute(
            "DELETE FROM agent_sessions WHERE ended_at IS NOT NULL AND ended_at < ?",
            (cutoff,),
        ) as cur:
            deleted = cur.rowcount
        await self.db.commit()
        return max(0, deleted or 0)

    def _row_to_model(self, row) -> AgentSession:
        metadata = None
        if row["metadata_json"]:
            try:
                parsed = json.loads(row["metadata_json"])
                metadata = parsed if isinstance(parsed, dict) else None
            except json.JSONDecodeError:
                metadata = None
        return AgentSession(
            id=row["id"],
            agentName=row["agent_name"],
            startedAt=row["started_at"],
            endedAt=row["ended_at"],
            externalSessionId=row["external_session_id"],
            workingDirectory=row["working_directory"],
            linkedSpaceId=row["space_id"],
            lastFileOffset=row["last_file_offset"] or 0,
            totalActivities=row["total_activities"] or 0,
            tasksCreated=row["tasks_created"] or 0,
            tasksUpdated=row["tasks_updated"] or 0,
            tasksCompleted=row["tasks_completed"] or 0,
            spacesCreated=row["spaces_created"] or 0,
            documentsCreated=row["documents_created"] or 0,
            metadata=metadata,
        )

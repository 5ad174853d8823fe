"""SQLite implementation of the agent activity log."""
from __future__ import annotations

import json

import aiosqlite

from spacetrail.models import AgentActivity, coerce_activity_kind, coerce_resource_kind


class SqliteActivityRepository:
    """Append-only activity rows. Rows are never updated once written."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert(self, activity: AgentActivity, *, commit: bool = True) -> None:
        await self.db.execute(
            """INSERT INTO agent_activity (
                id, session_id, agent_name, activity_type, resource_type,
                resource_id, description, metadata_json, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                activity.id, activity.sessionId, activity.agentName,
                activity.kind, activity.resourceKind, activity.resourceId,
                activity.description,
                json.dumps(activity.metadata) if activity.metadata else None,
                activity.timestamp,
            ),
        )
        if commit:
            await self.db.commit()

    async def list(
        self,
        session_id: str | None = None,
        agent_name: str | None = None,
        kind: str | None = None,
        resource_kind: str | None = None,
        limit: int = 100,
    ) -> list[AgentActivity]:
        clauses: list[str] = []
        params: list = []
        for column, value in (
            ("session_id", session_id),
            ("agent_name", agent_name),
            ("activity_type", kind),
            ("resource_type", resource_kind),
        ):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        async with self.db.execute(
            f"SELECT * FROM agent_activity {where} ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            tuple(params),
        ) as cur:
            return [self._row_to_model(r) for r in await cur.fetchall()]

    async def count_for_session(self, session_id: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM agent_activity WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    def _row_to_model(self, row) -> AgentActivity:
        metadata = None
        if row["metadata_json"]:
            try:
                parsed = json.loads(row["metadata_json"])
                metadata = parsed if isinstance(parsed, dict) else None
            except json.JSONDecodeError:
                metadata = None
        return AgentActivity(
            id=row["id"],
            sessionId=row["session_id"],
            agentName=row["agent_name"],
            kind=coerce_activity_kind(row["activity_type"]),
            resourceKind=coerce_resource_kind(row["resource_type"]),
            resourceId=row["resource_id"],
            description=row["description"],
            metadata=metadata,
            timestamp=row["timestamp"],
        )

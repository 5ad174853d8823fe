"""Agent session lifecycle, activity logging and per-agent metrics."""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

import aiosqlite

from spacetrail.date_utils import format_timestamp, utc_now_iso
from spacetrail.db.repositories.activities import SqliteActivityRepository
from spacetrail.db.repositories.sessions import SqliteAgentSessionRepository
from spacetrail.models import (
    AgentActivity,
    AgentMetrics,
    AgentSession,
    coerce_activity_kind,
    coerce_resource_kind,
)

logger = logging.getLogger("spacetrail")

# (activity kind, resource kind) -> session counter bumped alongside totalActivities
_COUNTER_FOR_ACTIVITY = {
    ("created", "task"): "tasksCreated",
    ("created", "space"): "spacesCreated",
    ("created", "document"): "documentsCreated",
    ("updated", "task"): "tasksUpdated",
    ("completed", "task"): "tasksCompleted",
}


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str):
        super().__init__(f"Agent session {session_id} not found")
        self.session_id = session_id


class AgentMonitor:
    """Explicit session tracking for agents that report their own activity.

    Transcript ingestion creates sessions on its own; this service covers the
    rest of the lifecycle (ending sessions, manual activity logging, metrics).
    Writes hold ``write_lock`` so they never interleave with an ingest batch.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        session_repo: SqliteAgentSessionRepository,
        activity_repo: SqliteActivityRepository,
        write_lock: asyncio.Lock | None = None,
    ):
        self.db = db
        self.session_repo = session_repo
        self.activity_repo = activity_repo
        self.write_lock = write_lock or asyncio.Lock()

    # ── Sessions ──────────────────────────────────────────────────

    async def start_session(self, agent_name: str, metadata: dict[str, str] | None = None) -> AgentSession:
        session = AgentSession(
            id=str(uuid.uuid4()),
            agentName=agent_name,
            startedAt=utc_now_iso(),
            metadata=metadata or None,
        )
        async with self.write_lock:
            await self.session_repo.insert(session)
        logger.info(f"Started session {session.id} for {agent_name}")
        return session

    async def end_session(self, session_id: str) -> AgentSession:
        """Mark a session ended. Ending an already ended session keeps its first end time."""
        async with self.write_lock:
            session = await self.session_repo.get_by_id(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.endedAt is None:
                ended_at = utc_now_iso()
                await self.session_repo.set_ended(session_id, ended_at)
                session = session.model_copy(update={"endedAt": ended_at})
        return session

    async def get_session(self, session_id: str) -> AgentSession | None:
        return await self.session_repo.get_by_id(session_id)

    async def get_active_session(self, agent_name: str) -> AgentSession | None:
        return await self.session_repo.latest_active(agent_name)

    async def get_or_create_session(self, agent_name: str) -> AgentSession:
        active = await self.get_active_session(agent_name)
        if active is not None:
            return active
        return await self.start_session(agent_name)

    async def list_sessions(
        self, agent_name: str | None = None, active_only: bool = False, limit: int = 50,
    ) -> list[AgentSession]:
        return await self.session_repo.list(agent_name=agent_name, active_only=active_only, limit=limit)

    # ── Activities ────────────────────────────────────────────────

    async def log_activity(
        self,
        session_id: str,
        agent_name: str,
        kind: str,
        resource_kind: str,
        resource_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> AgentActivity:
        kind = coerce_activity_kind(kind)
        resource_kind = coerce_resource_kind(resource_kind)
        activity = AgentActivity(
            id=str(uuid.uuid4()),
            sessionId=session_id,
            agentName=agent_name,
            kind=kind,
            resourceKind=resource_kind,
            resourceId=resource_id,
            description=description,
            metadata=metadata or None,
            timestamp=utc_now_iso(),
        )
        counters = {"totalActivities": 1}
        specific = _COUNTER_FOR_ACTIVITY.get((kind, resource_kind))
        if specific:
            counters[specific] = 1

        async with self.write_lock:
            if await self.session_repo.get_by_id(session_id) is None:
                raise SessionNotFoundError(session_id)
            try:
                await self.activity_repo.insert(activity, commit=False)
                await self.session_repo.increment_counters(session_id, counters, commit=False)
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise
        return activity

    async def list_activities(
        self,
        session_id: str | None = None,
        agent_name: str | None = None,
        kind: str | None = None,
        resource_kind: str | None = None,
        limit: int = 100,
    ) -> list[AgentActivity]:
        return await self.activity_repo.list(
            session_id=session_id,
            agent_name=agent_name,
            kind=kind,
            resource_kind=resource_kind,
            limit=limit,
        )

    # ── Analytics ─────────────────────────────────────────────────

    async def get_metrics(self, agent_name: str) -> AgentMetrics:
        sessions = await self.session_repo.list(agent_name=agent_name, limit=None)
        durations = [s.durationSeconds for s in sessions if not s.isActive]
        durations = [d for d in durations if d is not None]
        total_duration = sum(durations)

        return AgentMetrics(
            agentName=agent_name,
            totalSessions=len(sessions),
            activeSessions=sum(1 for s in sessions if s.isActive),
            totalActivities=sum(s.totalActivities for s in sessions),
            tasksCreated=sum(s.tasksCreated for s in sessions),
            tasksUpdated=sum(s.tasksUpdated for s in sessions),
            tasksCompleted=sum(s.tasksCompleted for s in sessions),
            spacesCreated=sum(s.spacesCreated for s in sessions),
            documentsCreated=sum(s.documentsCreated for s in sessions),
            averageSessionDuration=total_duration / len(durations) if durations else 0.0,
            totalWorkTime=total_duration,
        )

    async def cleanup_old_data(self, older_than_days: int) -> int:
        """Delete sessions that ended before the cutoff; their activities cascade."""
        cutoff = format_timestamp(datetime.now(timezone.utc) - timedelta(days=older_than_days))
        async with self.write_lock:
            deleted = await self.session_repo.delete_ended_before(cutoff)
        if deleted:
            logger.info(f"Deleted {deleted} session(s) ended before {cutoff}")
        return deleted

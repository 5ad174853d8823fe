"""Merge parsed transcript batches into the session and activity stores."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

import aiosqlite

from spacetrail.date_utils import normalize_timestamp
from spacetrail.db.repositories.activities import SqliteActivityRepository
from spacetrail.db.repositories.sessions import SqliteAgentSessionRepository
from spacetrail.ingest.errors import SessionConflictError
from spacetrail.ingest.space_locator import SpaceLocator
from spacetrail.models import AgentActivity, AgentSession
from spacetrail.parsers.transcript import (
    AssistantTurn,
    SessionInfo,
    TranscriptMessage,
    UserTurn,
    session_info,
    tool_invocations,
)

logger = logging.getLogger("spacetrail.ingest")


@dataclass
class ReconcileResult:
    reconciled: bool = False
    session_id: str | None = None
    created: bool = False
    user_turns: int = 0
    tool_names: list[str] | None = None
    linked_space_id: str | None = None

    @property
    def activity_delta(self) -> int:
        return self.user_turns + len(self.tool_names or [])


class SessionReconciler:
    """Find-or-create the session for a transcript and apply one batch to it.

    A batch is applied in a single transaction: the session row, its counter
    increments, every tool activity and the offset advance commit together or
    not at all. Calls are serialized by ``write_lock``, which every writer on
    the shared connection must hold so no other commit lands mid-batch.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        session_repo: SqliteAgentSessionRepository,
        activity_repo: SqliteActivityRepository,
        locator: SpaceLocator,
        agent_name: str,
        write_lock: asyncio.Lock | None = None,
    ):
        self.db = db
        self.session_repo = session_repo
        self.activity_repo = activity_repo
        self.locator = locator
        self.agent_name = agent_name
        self.write_lock = write_lock or asyncio.Lock()

    async def ingest(
        self,
        external_session_id: str,
        messages: list[TranscriptMessage],
        file_path: Path | str,
        new_offset: int,
    ) -> ReconcileResult:
        info = next((i for i in map(session_info, messages) if i is not None), None)
        if info is None:
            return ReconcileResult()

        async with self.write_lock:
            try:
                result = await self._apply(external_session_id, info, messages, file_path, new_offset)
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

        if result.created:
            logger.info(f"New {self.agent_name} session detected: {external_session_id}")
            if result.linked_space_id:
                logger.info(f"Session {external_session_id} linked to space {result.linked_space_id}")
        return result

    async def reset_offset(self, external_session_id: str, offset: int) -> bool:
        """Rewind the persisted offset of a truncated transcript. False when no session exists yet."""
        async with self.write_lock:
            session = await self.session_repo.get_by_external_id(external_session_id)
            if session is None:
                return False
            await self.session_repo.reset_offset(session.id, offset)
        logger.info(f"Session {external_session_id} transcript truncated, offset reset to {offset}")
        return True

    async def _apply(
        self,
        external_session_id: str,
        info: SessionInfo,
        messages: list[TranscriptMessage],
        file_path: Path | str,
        new_offset: int,
    ) -> ReconcileResult:
        session = await self.session_repo.get_by_external_id(external_session_id)
        created = session is None
        if session is None:
            session = await self._create_session(external_session_id, info, file_path)

        user_turns = 0
        tool_names: list[str] = []
        for message in messages:
            if isinstance(message, UserTurn):
                user_turns += 1
            elif isinstance(message, AssistantTurn):
                timestamp = normalize_timestamp(message.timestamp)
                for tool in tool_invocations(message):
                    tool_names.append(tool.name)
                    await self.activity_repo.insert(
                        AgentActivity(
                            id=str(uuid.uuid4()),
                            sessionId=session.id,
                            agentName=session.agentName,
                            kind="other",
                            resourceKind="other",
                            description=f"tool: {tool.name}",
                            metadata={"toolUseId": tool.id, "turnId": message.uuid},
                            timestamp=timestamp,
                        ),
                        commit=False,
                    )

        await self.session_repo.increment_counters(
            session.id, {"totalActivities": user_turns + len(tool_names)}, commit=False,
        )
        await self.session_repo.advance_offset(session.id, new_offset, commit=False)

        return ReconcileResult(
            reconciled=True,
            session_id=session.id,
            created=created,
            user_turns=user_turns,
            tool_names=tool_names,
            linked_space_id=session.linkedSpaceId,
        )

    async def _create_session(
        self, external_session_id: str, info: SessionInfo, file_path: Path | str,
    ) -> AgentSession:
        space = await self.locator.locate(info.workingDirectory)
        session = AgentSession(
            id=str(uuid.uuid4()),
            agentName=self.agent_name,
            startedAt=normalize_timestamp(info.timestamp),
            externalSessionId=external_session_id,
            workingDirectory=info.workingDirectory,
            linkedSpaceId=space.id if space else None,
            metadata={"transcriptPath": str(file_path), **({"gitBranch": info.branch} if info.branch else {})},
        )
        try:
            await self.session_repo.insert(session, commit=False)
        except aiosqlite.IntegrityError as exc:
            raise SessionConflictError(external_session_id) from exc
        return session

import asyncio
import json
import unittest
from unittest.mock import patch

import aiosqlite

from spacetrail.db.connection import open_connection
from spacetrail.db.repositories.activities import SqliteActivityRepository
from spacetrail.db.repositories.sessions import SqliteAgentSessionRepository
from spacetrail.db.repositories.spaces import SqliteSpaceRepository
from spacetrail.db.sqlite_migrations import run_migrations
from spacetrail.ingest.errors import ReconcileError, SessionConflictError
from spacetrail.ingest.reconciler import SessionReconciler
from spacetrail.ingest.space_locator import SpaceLocator
from spacetrail.parsers.transcript import parse_lines


def _turn(kind: str, uuid: str, *tools: str, cwd: str = "/proj", timestamp: str = "2026-02-16T10:00:00.250Z") -> str:
    if kind == "user":
        message = {"role": "user", "content": "do it"}
    else:
        message = {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": f"{uuid}-{i}", "name": name, "input": {}} for i, name in enumerate(tools)],
        }
    return json.dumps({
        "type": kind,
        "sessionId": "S1",
        "uuid": uuid,
        "timestamp": timestamp,
        "cwd": cwd,
        "message": message,
    })


class SessionReconcilerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await open_connection(":memory:")
        await run_migrations(self.db)
        self.sessions = SqliteAgentSessionRepository(self.db)
        self.activities = SqliteActivityRepository(self.db)
        self.spaces = SqliteSpaceRepository(self.db)
        await self.spaces.upsert({"id": "space-proj", "name": "Project", "path": "/proj"})
        self.reconciler = SessionReconciler(
            self.db, self.sessions, self.activities, SpaceLocator(self.spaces), "Claude Code",
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_end_to_end_single_batch(self) -> None:
        messages = parse_lines(_turn("user", "u1") + "\n" + _turn("assistant", "a1", "Read", "Edit") + "\n")
        result = await self.reconciler.ingest("S1", messages, "/t/S1.jsonl", 512)

        self.assertTrue(result.reconciled)
        self.assertTrue(result.created)
        session = await self.sessions.get_by_external_id("S1")
        assert session is not None
        self.assertEqual(session.linkedSpaceId, "space-proj")
        self.assertEqual(session.workingDirectory, "/proj")
        self.assertEqual(session.agentName, "Claude Code")
        self.assertEqual(session.startedAt, "2026-02-16T10:00:00.250Z")
        self.assertEqual(session.totalActivities, 3)
        self.assertEqual(session.lastFileOffset, 512)
        self.assertIsNone(session.endedAt)

        activities = await self.activities.list(session_id=session.id)
        self.assertEqual(sorted(a.description for a in activities), ["tool: Edit", "tool: Read"])
        for activity in activities:
            self.assertEqual(activity.kind, "other")
            self.assertEqual(activity.resourceKind, "other")
            self.assertEqual(activity.metadata["turnId"], "a1")

    async def test_batch_without_session_info_is_a_no_op(self) -> None:
        messages = parse_lines(json.dumps({"type": "summary", "summary": "s"}))
        result = await self.reconciler.ingest("S1", messages, "/t/S1.jsonl", 40)
        self.assertFalse(result.reconciled)
        self.assertIsNone(await self.sessions.get_by_external_id("S1"))

    async def test_later_batches_accumulate_on_the_same_session(self) -> None:
        await self.reconciler.ingest("S1", parse_lines(_turn("user", "u1")), "/t/S1.jsonl", 100)
        result = await self.reconciler.ingest(
            "S1", parse_lines(_turn("assistant", "a1", "Bash")), "/t/S1.jsonl", 200,
        )
        self.assertFalse(result.created)
        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.totalActivities, 2)
        self.assertEqual(session.lastFileOffset, 200)
        self.assertEqual(await self.activities.count_for_session(session.id), 1)

    async def test_offset_never_moves_backwards(self) -> None:
        await self.reconciler.ingest("S1", parse_lines(_turn("user", "u1")), "/t/S1.jsonl", 300)
        await self.reconciler.ingest("S1", parse_lines(_turn("user", "u2")), "/t/S1.jsonl", 120)
        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.lastFileOffset, 300)

    async def test_concurrent_batches_create_one_session_with_summed_counters(self) -> None:
        first = parse_lines(_turn("user", "u1") + "\n" + _turn("assistant", "a1", "Read"))
        second = parse_lines(_turn("user", "u2") + "\n" + _turn("assistant", "a2", "Edit", "Write"))
        await asyncio.gather(
            self.reconciler.ingest("S1", first, "/t/S1.jsonl", 100),
            self.reconciler.ingest("S1", second, "/t/S1.jsonl", 250),
        )
        rows = await self.sessions.list(limit=None)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].totalActivities, 5)
        self.assertEqual(rows[0].lastFileOffset, 250)
        self.assertEqual(await self.activities.count_for_session(rows[0].id), 3)

    async def test_unmatched_working_directory_leaves_session_unlinked(self) -> None:
        await self.reconciler.ingest("S2", parse_lines(_turn("user", "u1", cwd="/elsewhere")), "/t/S2.jsonl", 10)
        session = await self.sessions.get_by_external_id("S2")
        self.assertIsNone(session.linkedSpaceId)

    async def test_unparseable_timestamp_falls_back_to_now(self) -> None:
        await self.reconciler.ingest("S1", parse_lines(_turn("user", "u1", timestamp="yesterday")), "/t/S1.jsonl", 10)
        session = await self.sessions.get_by_external_id("S1")
        self.assertTrue(session.startedAt.endswith("Z"))
        self.assertNotEqual(session.startedAt, "yesterday")

    async def test_duplicate_insert_raises_conflict(self) -> None:
        await self.reconciler.ingest("S1", parse_lines(_turn("user", "u1")), "/t/S1.jsonl", 10)
        with patch.object(self.sessions, "get_by_external_id", return_value=None):
            with self.assertRaises(SessionConflictError) as ctx:
                await self.reconciler.ingest(
                    "S1", parse_lines(_turn("assistant", "a1", "Read")), "/t/S1.jsonl", 20,
                )
        self.assertIsInstance(ctx.exception, ReconcileError)
        self.assertEqual(ctx.exception.external_session_id, "S1")
        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.totalActivities, 1)
        self.assertEqual(session.lastFileOffset, 10)
        self.assertEqual(await self.activities.count_for_session(session.id), 0)

    async def test_persistence_failure_rolls_back_the_whole_batch(self) -> None:
        messages = parse_lines(_turn("user", "u1") + "\n" + _turn("assistant", "a1", "Read"))
        with patch.object(self.activities, "insert", side_effect=aiosqlite.OperationalError("disk I/O error")):
            with self.assertRaises(aiosqlite.OperationalError):
                await self.reconciler.ingest("S1", messages, "/t/S1.jsonl", 100)
        self.assertIsNone(await self.sessions.get_by_external_id("S1"))

        result = await self.reconciler.ingest("S1", messages, "/t/S1.jsonl", 100)
        self.assertTrue(result.created)
        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.totalActivities, 2)


if __name__ == "__main__":
    unittest.main()

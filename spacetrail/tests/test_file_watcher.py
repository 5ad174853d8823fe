import asyncio
import json
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

import aiosqlite
from watchfiles import Change

from spacetrail.db.connection import open_connection
from spacetrail.db.file_watcher import TranscriptFilter, TranscriptWatcher, transcript_session_id
from spacetrail.db.repositories.activities import SqliteActivityRepository
from spacetrail.db.repositories.sessions import SqliteAgentSessionRepository
from spacetrail.db.repositories.spaces import SqliteSpaceRepository
from spacetrail.db.sqlite_migrations import run_migrations
from spacetrail.ingest.reader import read_from
from spacetrail.ingest.reconciler import SessionReconciler
from spacetrail.ingest.space_locator import SpaceLocator


def _user(uuid: str, session_id: str = "S1") -> str:
    return json.dumps({
        "type": "user",
        "sessionId": session_id,
        "uuid": uuid,
        "timestamp": "2026-02-16T10:00:00Z",
        "cwd": "/proj",
        "message": {"role": "user", "content": "go"},
    }) + "\n"


def _assistant(uuid: str, *tools: str) -> str:
    return json.dumps({
        "type": "assistant",
        "sessionId": "S1",
        "uuid": uuid,
        "timestamp": "2026-02-16T10:00:05Z",
        "cwd": "/proj",
        "message": {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": f"t-{name}", "name": name} for name in tools],
        },
    }) + "\n"


class TranscriptNamingTests(unittest.TestCase):
    def test_session_id_from_file_stem(self) -> None:
        self.assertEqual(transcript_session_id("/root/proj/S1.jsonl"), "S1")
        self.assertEqual(transcript_session_id("/root/proj/3f2a-9b.jsonl"), "3f2a-9b")

    def test_non_session_files_are_rejected(self) -> None:
        for path in ("/root/proj/agent-123.jsonl", "/root/proj/notes.md", "/root/proj/.jsonl", "/root/proj/.hidden.jsonl"):
            with self.subTest(path=path):
                self.assertIsNone(transcript_session_id(path))

    def test_filter_accepts_only_transcript_changes(self) -> None:
        watch_filter = TranscriptFilter(".jsonl", ("agent-",))
        self.assertTrue(watch_filter(Change.modified, "/root/proj/S1.jsonl"))
        self.assertTrue(watch_filter(Change.added, "/root/proj/S1.jsonl"))
        self.assertFalse(watch_filter(Change.deleted, "/root/proj/S1.jsonl"))
        self.assertFalse(watch_filter(Change.modified, "/root/proj/agent-9.jsonl"))
        self.assertFalse(watch_filter(Change.modified, "/root/proj/S1.json"))
        self.assertFalse(watch_filter(Change.modified, "/root/.git/S1.jsonl"))


class TranscriptWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name).resolve()
        self.project_dir = self.root / "-proj"
        self.project_dir.mkdir()
        self.path = self.project_dir / "S1.jsonl"

        self.db = await open_connection(":memory:")
        await run_migrations(self.db)
        self.sessions = SqliteAgentSessionRepository(self.db)
        self.activities = SqliteActivityRepository(self.db)
        spaces = SqliteSpaceRepository(self.db)
        await spaces.upsert({"id": "space-proj", "name": "Project", "path": "/proj"})
        self.reconciler = SessionReconciler(
            self.db, self.sessions, self.activities, SpaceLocator(spaces), "Claude Code",
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _watcher(self) -> TranscriptWatcher:
        watcher = TranscriptWatcher(suffix=".jsonl", skip_prefixes=("agent-",), debounce_ms=50)
        watcher.bind(self.reconciler, self.sessions, self.root)
        return watcher

    async def test_ingest_file_end_to_end(self) -> None:
        self.path.write_text(_user("u1") + _assistant("a1", "Read", "Edit"), encoding="utf-8")
        watcher = self._watcher()

        result = await watcher.ingest_file(self.path)

        self.assertTrue(result.reconciled)
        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.linkedSpaceId, "space-proj")
        self.assertEqual(session.totalActivities, 3)
        self.assertEqual(session.lastFileOffset, self.path.stat().st_size)
        descriptions = sorted(a.description for a in await self.activities.list(session_id=session.id))
        self.assertEqual(descriptions, ["tool: Edit", "tool: Read"])
        self.assertEqual(await watcher.offsets.get(self.path), self.path.stat().st_size)

    async def test_second_pass_without_new_bytes_changes_nothing(self) -> None:
        self.path.write_text(_user("u1"), encoding="utf-8")
        watcher = self._watcher()
        await watcher.ingest_file(self.path)
        self.assertIsNone(await watcher.ingest_file(self.path))
        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.totalActivities, 1)

    async def test_skipped_prefix_is_ignored(self) -> None:
        agent_file = self.project_dir / "agent-1.jsonl"
        agent_file.write_text(_user("u1", session_id="agent-1"), encoding="utf-8")
        self.assertIsNone(await self._watcher().ingest_file(agent_file))
        self.assertEqual(await self.sessions.list(limit=None), [])

    async def test_restart_resumes_from_persisted_offset(self) -> None:
        self.path.write_text(_user("u1"), encoding="utf-8")
        await self._watcher().ingest_file(self.path)
        persisted = (await self.sessions.get_by_external_id("S1")).lastFileOffset
        self.assertGreater(persisted, 0)

        with open(self.path, "a", encoding="utf-8") as handle:
            handle.write(_assistant("a1", "Read", "Edit"))

        restarted = self._watcher()
        self.assertEqual(await restarted.load_offsets(), 1)
        with patch("spacetrail.db.file_watcher.read_from", wraps=read_from) as reader:
            await restarted.ingest_file(self.path)
        reader.assert_called_once_with(self.path, persisted)

        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.totalActivities, 3)
        self.assertEqual(await self.activities.count_for_session(session.id), 2)

    async def test_truncated_file_clamps_offset(self) -> None:
        self.path.write_text(_user("u1") + _user("u2"), encoding="utf-8")
        watcher = self._watcher()
        await watcher.ingest_file(self.path)

        self.path.write_text("", encoding="utf-8")
        self.assertIsNone(await watcher.ingest_file(self.path))
        self.assertEqual(await watcher.offsets.get(self.path), 0)
        self.assertEqual((await self.sessions.get_by_external_id("S1")).lastFileOffset, 0)

        self.path.write_text(_user("u3"), encoding="utf-8")
        await watcher.ingest_file(self.path)
        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.totalActivities, 3)

    async def test_restart_after_truncation_reads_regrown_file(self) -> None:
        self.path.write_text(_user("u1") + _user("u2") + _user("u3"), encoding="utf-8")
        watcher = self._watcher()
        await watcher.ingest_file(self.path)
        self.path.write_text("", encoding="utf-8")
        await watcher.ingest_file(self.path)

        self.path.write_text(_user("u4") + _user("u5") + _user("u6") + _user("u7"), encoding="utf-8")
        restarted = self._watcher()
        await restarted.load_offsets()
        await restarted.ingest_file(self.path)

        session = await self.sessions.get_by_external_id("S1")
        self.assertEqual(session.totalActivities, 7)
        self.assertEqual(session.lastFileOffset, self.path.stat().st_size)

    async def test_out_of_range_timestamp_falls_back_during_startup(self) -> None:
        line = json.dumps({
            "type": "user",
            "sessionId": "S1",
            "uuid": "u1",
            "timestamp": "9999-12-31T23:59:59.000-05:00",
            "cwd": "/proj",
            "message": {"role": "user", "content": "go"},
        }) + "\n"
        self.path.write_text(line, encoding="utf-8")

        watcher = TranscriptWatcher(suffix=".jsonl", skip_prefixes=("agent-",), debounce_ms=50)
        await watcher.start(self.reconciler, self.sessions, self.root)
        try:
            session = await self.sessions.get_by_external_id("S1")
            self.assertEqual(session.totalActivities, 1)
            self.assertTrue(session.startedAt.startswith("20"))
            self.assertEqual(await watcher.offsets.get(self.path), self.path.stat().st_size)
        finally:
            await watcher.stop()

    async def test_sweep_continues_after_unexpected_error(self) -> None:
        self.path.write_text(_user("u1"), encoding="utf-8")
        other = self.project_dir / "S2.jsonl"
        other.write_text(_user("v1", session_id="S2"), encoding="utf-8")
        watcher = self._watcher()
        ingest = watcher.ingest_file

        async def flaky(path):
            if Path(path).name == "S1.jsonl":
                raise RuntimeError("boom")
            return await ingest(path)

        with patch.object(watcher, "ingest_file", side_effect=flaky):
            with self.assertLogs("spacetrail.watcher", level="ERROR"):
                self.assertEqual(await watcher.sweep(), 2)

        self.assertIsNone(await self.sessions.get_by_external_id("S1"))
        self.assertIsNotNone(await self.sessions.get_by_external_id("S2"))
        self.assertEqual(watcher.stats["errors"], 1)

    async def _wait_for_session(self, external_id: str, total: int, timeout: float = 10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            session = await self.sessions.get_by_external_id(external_id)
            if session is not None and session.totalActivities >= total:
                return session
            await asyncio.sleep(0.05)
        self.fail(f"session {external_id} did not reach {total} activities")

    async def test_live_append_is_ingested(self) -> None:
        watcher = TranscriptWatcher(suffix=".jsonl", skip_prefixes=("agent-",), debounce_ms=100)
        await watcher.start(self.reconciler, self.sessions, self.root)
        try:
            self.assertTrue(watcher.is_watching)
            await asyncio.sleep(0.3)
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(_user("u1"))

            session = await self._wait_for_session("S1", 1)
            self.assertEqual(session.totalActivities, 1)
            self.assertEqual(session.linkedSpaceId, "space-proj")
        finally:
            await watcher.stop()

    async def test_appends_within_debounce_window_are_one_pass(self) -> None:
        self.path.write_text("", encoding="utf-8")
        watcher = TranscriptWatcher(suffix=".jsonl", skip_prefixes=("agent-",), debounce_ms=500)
        await watcher.start(self.reconciler, self.sessions, self.root)
        try:
            await asyncio.sleep(0.3)
            for uuid in ("u1", "u2", "u3"):
                with open(self.path, "a", encoding="utf-8") as handle:
                    handle.write(_user(uuid))

            await self._wait_for_session("S1", 3)
            await asyncio.sleep(0.3)
            self.assertEqual(watcher.stats["filesIngested"], 1)
            self.assertEqual((await self.sessions.get_by_external_id("S1")).totalActivities, 3)
        finally:
            await watcher.stop()

    async def test_failed_reconcile_does_not_advance_offset(self) -> None:
        self.path.write_text(_user("u1"), encoding="utf-8")
        watcher = self._watcher()
        with patch.object(
            self.reconciler, "ingest", side_effect=aiosqlite.OperationalError("database is locked"),
        ):
            self.assertIsNone(await watcher.ingest_file(self.path))
        self.assertEqual(await watcher.offsets.get(self.path), 0)
        self.assertEqual(watcher.stats["errors"], 1)

        result = await watcher.ingest_file(self.path)
        self.assertTrue(result.reconciled)

    async def test_missing_file_is_logged_not_raised(self) -> None:
        watcher = self._watcher()
        with self.assertLogs("spacetrail.watcher", level="WARNING"):
            self.assertIsNone(await watcher.ingest_file(self.project_dir / "gone.jsonl"))

    async def test_start_sweeps_recent_files_only(self) -> None:
        self.path.write_text(_user("u1"), encoding="utf-8")
        old = self.project_dir / "OLD.jsonl"
        old.write_text(_user("o1", session_id="OLD"), encoding="utf-8")
        two_hours_ago = time.time() - 7200
        os.utime(old, (two_hours_ago, two_hours_ago))

        watcher = TranscriptWatcher(suffix=".jsonl", skip_prefixes=("agent-",), debounce_ms=50, sweep_window_seconds=3600)
        await watcher.start(self.reconciler, self.sessions, self.root)
        try:
            self.assertTrue(watcher.is_running)
            self.assertIsNotNone(await self.sessions.get_by_external_id("S1"))
            self.assertIsNone(await self.sessions.get_by_external_id("OLD"))
        finally:
            await watcher.stop()
        self.assertFalse(watcher.is_running)

    async def test_start_with_missing_directory_still_runs(self) -> None:
        watcher = TranscriptWatcher(suffix=".jsonl", skip_prefixes=("agent-",))
        with self.assertLogs("spacetrail.watcher", level="WARNING"):
            await watcher.start(self.reconciler, self.sessions, self.root / "does-not-exist")
        try:
            self.assertTrue(watcher.is_running)
            self.assertFalse(watcher.is_watching)
        finally:
            await watcher.stop()

    async def test_duplicate_notifications_are_coalesced(self) -> None:
        watcher = self._watcher()
        self.assertTrue(watcher._enqueue(self.path))
        self.assertFalse(watcher._enqueue(self.path))
        self.assertEqual(watcher.stats["pending"], 1)


if __name__ == "__main__":
    unittest.main()

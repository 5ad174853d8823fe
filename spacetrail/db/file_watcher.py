"""Transcript watcher service using watchfiles.

Monitors the transcripts directory and feeds appended bytes of each changed
transcript through the incremental reader and the session reconciler.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

import aiosqlite
from watchfiles import Change, DefaultFilter, awatch

from spacetrail import config
from spacetrail.db.repositories.sessions import SqliteAgentSessionRepository
from spacetrail.ingest.errors import ReconcileError
from spacetrail.ingest.offsets import OffsetStore
from spacetrail.ingest.reader import read_from
from spacetrail.ingest.reconciler import ReconcileResult, SessionReconciler
from spacetrail.observability import (
    record_bytes_read,
    record_ingestion,
    record_tool_invocations,
    start_span,
)

logger = logging.getLogger("spacetrail.watcher")


def transcript_session_id(
    path: Path | str,
    suffix: str = config.TRANSCRIPT_SUFFIX,
    skip_prefixes: tuple[str, ...] = config.SKIP_PREFIXES,
) -> str | None:
    """External session id for a transcript path, or None for non-session files."""
    name = Path(path).name
    if not name.endswith(suffix) or name.startswith("."):
        return None
    stem = name[: -len(suffix)]
    if not stem or any(stem.startswith(prefix) for prefix in skip_prefixes):
        return None
    return stem


class TranscriptFilter(DefaultFilter):
    """Accept only session transcripts on top of the default ignore rules."""

    def __init__(self, suffix: str, skip_prefixes: tuple[str, ...]):
        super().__init__()
        self.suffix = suffix
        self.skip_prefixes = skip_prefixes

    def __call__(self, change: Change, path: str) -> bool:
        if change == Change.deleted:
            return False
        return (
            transcript_session_id(path, self.suffix, self.skip_prefixes) is not None
            and super().__call__(change, path)
        )


class TranscriptWatcher:
    """Background watcher that ingests transcript appends.

    Uses `watchfiles` (Rust-accelerated) for notifications. Changed paths are
    coalesced into a pending set and drained by a single worker task, so one
    file is never ingested twice at the same time.
    """

    def __init__(
        self,
        *,
        suffix: str = config.TRANSCRIPT_SUFFIX,
        skip_prefixes: tuple[str, ...] = config.SKIP_PREFIXES,
        debounce_ms: int = config.WATCH_DEBOUNCE_MS,
        sweep_window_seconds: int = config.STARTUP_SWEEP_WINDOW_SECONDS,
        offsets: OffsetStore | None = None,
    ):
        self.suffix = suffix
        self.skip_prefixes = tuple(skip_prefixes)
        self.debounce_ms = debounce_ms
        self.sweep_window_seconds = sweep_window_seconds
        self.offsets = offsets or OffsetStore()

        self._reconciler: Optional[SessionReconciler] = None
        self._session_repo: Optional[SqliteAgentSessionRepository] = None
        self._root: Optional[Path] = None
        self._filter = TranscriptFilter(self.suffix, self.skip_prefixes)

        self._watch_task: Optional[asyncio.Task] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._queue: asyncio.Queue[Path] = asyncio.Queue()
        self._pending: set[str] = set()
        self._ingest_lock = asyncio.Lock()
        self._running = False
        self._watching = False
        self._stats = {"filesIngested": 0, "batchesReconciled": 0, "errors": 0}

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(
        self,
        reconciler: SessionReconciler,
        session_repo: SqliteAgentSessionRepository,
        root: Path | None = None,
    ) -> None:
        """Load offsets, subscribe, sweep recent files, then start draining events."""
        if self._running:
            logger.warning("Transcript watcher already running")
            return

        self.bind(reconciler, session_repo, root)
        self._running = True
        self._stop_event = asyncio.Event()

        await self.load_offsets()

        if self._root.is_dir():
            self._watching = True
            self._watch_task = asyncio.create_task(self._watch_loop(self._root))
        else:
            logger.warning(f"Transcripts directory not found, live updates disabled: {self._root}")

        swept = await self.sweep()
        logger.info(f"Swept {swept} recently active transcript file(s)")

        self._worker_task = asyncio.create_task(self._worker())
        logger.info(f"Transcript watcher started: {self._root}")

    def bind(
        self,
        reconciler: SessionReconciler,
        session_repo: SqliteAgentSessionRepository,
        root: Path | None = None,
    ) -> None:
        """Attach collaborators without subscribing; ``ingest_file`` works after this."""
        self._reconciler = reconciler
        self._session_repo = session_repo
        self._root = Path(root or config.TRANSCRIPTS_DIR).expanduser().resolve()

    async def stop(self) -> None:
        """Stop the watch loop and the worker."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        for task in (self._watch_task, self._worker_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watch_task = None
        self._worker_task = None
        self._pending.clear()
        logger.info("Transcript watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_watching(self) -> bool:
        return self._watching

    @property
    def root(self) -> Optional[Path]:
        return self._root

    @property
    def stats(self) -> dict[str, int]:
        return {**self._stats, "pending": len(self._pending)}

    # ── Startup ───────────────────────────────────────────────────

    def _transcript_files(self) -> list[Path]:
        if self._root is None or not self._root.is_dir():
            return []
        files = []
        for path in self._root.rglob(f"*{self.suffix}"):
            if any(part.startswith(".") for part in path.relative_to(self._root).parts):
                continue
            if path.is_file() and transcript_session_id(path, self.suffix, self.skip_prefixes):
                files.append(path)
        return files

    async def load_offsets(self) -> int:
        """Seed the offset store from sessions that already consumed bytes."""
        if self._session_repo is None:
            return 0
        try:
            sessions = await self._session_repo.list_with_offsets()
        except aiosqlite.Error as exc:
            logger.warning(f"Failed to load session offsets: {exc}")
            return 0
        if not sessions:
            return 0

        by_session_id: dict[str, Path] = {}
        for path in await asyncio.to_thread(self._transcript_files):
            by_session_id.setdefault(path.name[: -len(self.suffix)], path)

        offsets: dict[str, int] = {}
        for session in sessions:
            path = by_session_id.get(session.externalSessionId or "")
            if path is not None:
                offsets[str(path)] = session.lastFileOffset
        loaded = await self.offsets.seed(offsets)
        logger.info(f"Loaded {loaded} transcript offset(s) from {len(sessions)} session(s)")
        return loaded

    async def sweep(self) -> int:
        """Ingest every transcript modified inside the sweep window."""
        cutoff = time.time() - self.sweep_window_seconds

        def _recent() -> list[Path]:
            recent = []
            for path in self._transcript_files():
                try:
                    mtime = path.stat().st_mtime
                except OSError:
                    continue
                if mtime > cutoff:
                    recent.append((mtime, path))
            return [path for _, path in sorted(recent)]

        paths = await asyncio.to_thread(_recent)
        for path in paths:
            try:
                await self.ingest_file(path)
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(f"Unexpected error sweeping {path}: {e}")
        return len(paths)

    # ── Live loop ─────────────────────────────────────────────────

    def _enqueue(self, path: Path) -> bool:
        key = str(path)
        if key in self._pending:
            return False
        self._pending.add(key)
        self._queue.put_nowait(path)
        return True

    async def _watch_loop(self, root: Path) -> None:
        try:
            async for changes in awatch(
                root,
                watch_filter=self._filter,
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
                recursive=True,
            ):
                if not self._running:
                    break
                queued = sum(self._enqueue(Path(raw)) for _, raw in changes)
                if queued:
                    logger.debug(f"Queued {queued} changed transcript(s)")
        except asyncio.CancelledError:
            logger.info("Transcript watch task cancelled")
        except Exception as e:
            logger.error(f"Transcript watcher subscription failed, live updates disabled: {e}")
        finally:
            self._watching = False

    async def _worker(self) -> None:
        while True:
            path = await self._queue.get()
            # Cleared before ingesting so writes during this pass queue another one.
            self._pending.discard(str(path))
            try:
                await self.ingest_file(path)
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(f"Unexpected error ingesting {path}: {e}")
            finally:
                self._queue.task_done()

    # ── Ingestion ─────────────────────────────────────────────────

    async def ingest_file(self, path: Path | str) -> Optional[ReconcileResult]:
        """Read what was appended to ``path`` since its offset and reconcile it.

        The offset only advances after the batch is committed. Returns the
        reconcile result, or None when nothing was reconciled.
        """
        path = Path(path)
        session_id = transcript_session_id(path, self.suffix, self.skip_prefixes)
        if session_id is None or self._reconciler is None:
            return None

        async with self._ingest_lock:
            offset = await self.offsets.get(path)
            started = time.monotonic()
            try:
                read = await asyncio.to_thread(read_from, path, offset)
            except OSError as e:
                self._stats["errors"] += 1
                logger.warning(f"Cannot read transcript {path}: {e}")
                return None

            if read.truncated:
                await self.offsets.reset(path, read.new_offset)
                try:
                    await self._reconciler.reset_offset(session_id, read.new_offset)
                except aiosqlite.Error as e:
                    logger.warning(f"Failed to persist truncated offset for {path}: {e}")
                return None
            if read.new_offset <= offset:
                return None

            agent = self._reconciler.agent_name
            record_bytes_read(read.bytes_read, agent=agent)
            try:
                with start_span("spacetrail.ingest", {"session": session_id, "offset": offset}):
                    result = await self._reconciler.ingest(
                        session_id, read.messages, path, read.new_offset,
                    )
            except (ReconcileError, aiosqlite.Error) as e:
                self._stats["errors"] += 1
                record_ingestion("error", (time.monotonic() - started) * 1000, agent=agent)
                logger.error(f"Failed to reconcile {path} from offset {offset}: {e}")
                return None

            await self.offsets.advance(path, read.new_offset)
            self._stats["filesIngested"] += 1
            if result.reconciled:
                self._stats["batchesReconciled"] += 1
                for tool_name in result.tool_names or []:
                    record_tool_invocations(tool_name, agent=agent)
            record_ingestion(
                "reconciled" if result.reconciled else "skipped",
                (time.monotonic() - started) * 1000,
                agent=agent,
            )
            return result


# Singleton instance
transcript_watcher = TranscriptWatcher()

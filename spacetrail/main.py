"""SpaceTrail FastAPI service: transcript ingestion plus the session API."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from spacetrail import config
from spacetrail.agent_monitor import AgentMonitor
from spacetrail.db import connection, migrations
from spacetrail.db.factory import (
    get_activity_repository,
    get_session_repository,
    get_space_repository,
)
from spacetrail.db.file_watcher import transcript_watcher
from spacetrail.ingest.reconciler import SessionReconciler
from spacetrail.ingest.space_locator import SpaceLocator
from spacetrail.observability import initialize as initialize_observability, shutdown as shutdown_observability
from spacetrail.routers.sessions import agents_router, sessions_router
from spacetrail.routers.spaces import spaces_router

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("spacetrail")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("SpaceTrail starting up")
    initialize_observability(app)

    # 1. DB connection and schema
    db = await connection.get_connection()
    await migrations.run_migrations(db)

    # 2. Services sharing one writer lock on the single connection
    session_repo = get_session_repository(db)
    activity_repo = get_activity_repository(db)
    write_lock = asyncio.Lock()
    locator = SpaceLocator(get_space_repository(db))
    reconciler = SessionReconciler(
        db, session_repo, activity_repo, locator, config.AGENT_NAME, write_lock=write_lock,
    )
    app.state.space_locator = locator
    app.state.agent_monitor = AgentMonitor(db, session_repo, activity_repo, write_lock=write_lock)
    app.state.watcher = transcript_watcher

    # 3. Transcript watcher (startup sweep runs before this returns)
    if config.WATCHER_ENABLED:
        await transcript_watcher.start(reconciler, session_repo, config.TRANSCRIPTS_DIR)
    else:
        logger.info("Transcript watcher disabled (SPACETRAIL_WATCHER_ENABLED=false)")

    yield

    logger.info("SpaceTrail shutting down")
    await transcript_watcher.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="SpaceTrail API",
    description="Agent session and activity tracking fed by coding-assistant transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sessions_router)
app.include_router(agents_router)
app.include_router(spaces_router)


@app.get("/api/health")
async def health(request: Request):
    """Health check endpoint."""
    watcher = getattr(request.app.state, "watcher", transcript_watcher)
    offsets = await watcher.offsets.snapshot()
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "watcher": "running" if watcher.is_running else "stopped",
        "liveUpdates": watcher.is_watching,
        "transcriptsDir": str(watcher.root) if watcher.root else None,
        "trackedFiles": len(offsets),
        "stats": watcher.stats,
    }


def run() -> None:
    import uvicorn

    uvicorn.run("spacetrail.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()

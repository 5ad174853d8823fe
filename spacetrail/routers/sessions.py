"""Agent session, activity and metrics API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from spacetrail.agent_monitor import AgentMonitor, SessionNotFoundError
from spacetrail.models import ActivityKind, AgentActivity, AgentMetrics, AgentSession, ResourceKind

logger = logging.getLogger("spacetrail")

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
agents_router = APIRouter(prefix="/api/agents", tags=["agents"])


def _get_monitor(request: Request) -> AgentMonitor:
    monitor = getattr(request.app.state, "agent_monitor", None)
    if not monitor:
        raise HTTPException(status_code=503, detail="Agent monitor not initialized")
    return monitor


@sessions_router.get("", response_model=list[AgentSession])
async def list_sessions(
    request: Request,
    agentName: str | None = Query(None, description="Only sessions of this agent"),
    activeOnly: bool = Query(False, description="Only sessions that have not ended"),
    limit: int = Query(50, ge=1, le=1000),
):
    return await _get_monitor(request).list_sessions(
        agent_name=agentName, active_only=activeOnly, limit=limit,
    )


@sessions_router.get("/{session_id}", response_model=AgentSession)
async def get_session(request: Request, session_id: str):
    session = await _get_monitor(request).get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@sessions_router.post("/{session_id}/end", response_model=AgentSession)
async def end_session(request: Request, session_id: str):
    try:
        return await _get_monitor(request).end_session(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@sessions_router.get("/{session_id}/activities", response_model=list[AgentActivity])
async def list_session_activities(
    request: Request,
    session_id: str,
    kind: ActivityKind | None = Query(None),
    resourceKind: ResourceKind | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    monitor = _get_monitor(request)
    if not await monitor.get_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return await monitor.list_activities(
        session_id=session_id, kind=kind, resource_kind=resourceKind, limit=limit,
    )


@agents_router.get("/{agent_name}/metrics", response_model=AgentMetrics)
async def get_agent_metrics(request: Request, agent_name: str):
    return await _get_monitor(request).get_metrics(agent_name)

"""Pydantic models for sessions, activities and spaces."""
from __future__ import annotations

from typing import Literal, Optional, get_args

from pydantic import BaseModel, computed_field

from spacetrail.date_utils import parse_timestamp

ActivityKind = Literal[
    "created", "updated", "completed", "archived", "deleted",
    "viewed", "searched", "synced", "other",
]
ResourceKind = Literal[
    "task", "space", "document", "reminder", "external-issue", "session", "other",
]

ACTIVITY_KINDS: frozenset[str] = frozenset(get_args(ActivityKind))
RESOURCE_KINDS: frozenset[str] = frozenset(get_args(ResourceKind))


def coerce_activity_kind(value: str | None) -> str:
    return value if value in ACTIVITY_KINDS else "other"


def coerce_resource_kind(value: str | None) -> str:
    return value if value in RESOURCE_KINDS else "other"


# ── Space (organizational store) ───────────────────────────────────

class Space(BaseModel):
    id: str
    name: str
    path: Optional[str] = None  # absolute filesystem anchor, no trailing slash
    parentId: Optional[str] = None
    archived: bool = False
    lastActiveAt: str = ""


# ── Agent sessions & activity (aggregation store) ──────────────────

class AgentSession(BaseModel):
    id: str
    agentName: str
    startedAt: str
    endedAt: Optional[str] = None
    externalSessionId: Optional[str] = None  # transcript file stem, unique
    workingDirectory: Optional[str] = None
    linkedSpaceId: Optional[str] = None
    lastFileOffset: int = 0
    totalActivities: int = 0
    tasksCreated: int = 0
    tasksUpdated: int = 0
    tasksCompleted: int = 0
    spacesCreated: int = 0
    documentsCreated: int = 0
    metadata: Optional[dict[str, str]] = None

    @computed_field
    @property
    def isActive(self) -> bool:
        return self.endedAt is None

    @computed_field
    @property
    def durationSeconds(self) -> Optional[float]:
        if not self.endedAt:
            return None
        started = parse_timestamp(self.startedAt)
        ended = parse_timestamp(self.endedAt)
        if started is None or ended is None:
            return None
        return (ended - started).total_seconds()


class AgentActivity(BaseModel):
    id: str
    sessionId: str
    agentName: str
    kind: ActivityKind = "other"
    resourceKind: ResourceKind = "other"
    resourceId: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, str]] = None
    timestamp: str


class AgentMetrics(BaseModel):
    agentName: str
    totalSessions: int = 0
    activeSessions: int = 0
    totalActivities: int = 0
    tasksCreated: int = 0
    tasksUpdated: int = 0
    tasksCompleted: int = 0
    spacesCreated: int = 0
    documentsCreated: int = 0
    averageSessionDuration: float = 0.0  # seconds, ended sessions only
    totalWorkTime: float = 0.0

    @computed_field
    @property
    def averageActivitiesPerSession(self) -> float:
        return self.totalActivities / self.totalSessions if self.totalSessions else 0.0

    @computed_field
    @property
    def tasksPerSession(self) -> float:
        task_actions = self.tasksCreated + self.tasksUpdated + self.tasksCompleted
        return task_actions / self.totalSessions if self.totalSessions else 0.0

"""Repository package for database access."""

from .activities import SqliteActivityRepository
from .sessions import SqliteAgentSessionRepository
from .spaces import SqliteSpaceRepository

__all__ = [
    "SqliteActivityRepository",
    "SqliteAgentSessionRepository",
    "SqliteSpaceRepository",
]

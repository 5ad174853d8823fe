"""SpaceTrail configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_list(name: str, default: str) -> tuple[str, ...]:
    value = os.getenv(name, default)
    return tuple(part.strip() for part in value.split(",") if part.strip())


# Project root (one level up from spacetrail/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Database
DB_PATH = Path(os.getenv("SPACETRAIL_DB_PATH", str(PROJECT_ROOT / "data" / "spacetrail.db"))).expanduser()

# Transcript ingestion
TRANSCRIPTS_DIR = Path(
    os.getenv("SPACETRAIL_TRANSCRIPTS_DIR", str(Path.home() / ".claude" / "projects"))
).expanduser()
AGENT_NAME = os.getenv("SPACETRAIL_AGENT_NAME", "Claude Code")
TRANSCRIPT_SUFFIX = os.getenv("SPACETRAIL_TRANSCRIPT_SUFFIX", ".jsonl")
SKIP_PREFIXES = _env_list("SPACETRAIL_SKIP_PREFIXES", "agent-")
WATCHER_ENABLED = _env_bool("SPACETRAIL_WATCHER_ENABLED", True)
WATCH_DEBOUNCE_MS = _env_int("SPACETRAIL_WATCH_DEBOUNCE_MS", 1000)
STARTUP_SWEEP_WINDOW_SECONDS = _env_int("SPACETRAIL_STARTUP_SWEEP_WINDOW_SECONDS", 3600)

# Logging
LOG_LEVEL = os.getenv("SPACETRAIL_LOG_LEVEL", "INFO").upper()

# Observability
OTEL_ENABLED = _env_bool("SPACETRAIL_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("SPACETRAIL_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("SPACETRAIL_OTEL_SERVICE_NAME", "spacetrail")
PROM_PORT = _env_int("SPACETRAIL_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("SPACETRAIL_HOST", "127.0.0.1")
PORT = _env_int("SPACETRAIL_PORT", 8000)

"""Shared timestamp helpers.

Transcript timestamps arrive as ISO-8601 strings with fractional seconds and a
trailing ``Z``. Everything we persist is normalized to UTC ISO strings with
millisecond precision so rows sort lexicographically.
"""
from __future__ import annotations

from datetime import datetime, timezone


def format_timestamp(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(token: str | None) -> datetime | None:
    cleaned = (token or "").strip()
    if not cleaned:
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        # Offsets near datetime.max overflow on conversion.
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def normalize_timestamp(token: str | None, *, fallback_now: bool = True) -> str:
    """Normalize an ISO string, falling back to the current time when unparseable."""
    parsed = parse_timestamp(token)
    if parsed is not None:
        return format_timestamp(parsed)
    return utc_now_iso() if fallback_now else ""

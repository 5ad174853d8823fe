"""Decode Claude Code JSONL transcript lines into typed messages.

Each line of a transcript is one JSON object tagged by a ``type`` string.
Known types decode into their own model; anything else is kept as
``Unrecognized`` so newer transcript schemas never break ingestion. Lines that
fail to decode are dropped, never raised.
"""
from __future__ import annotations

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, JsonValue, field_validator


# ── Content blocks ─────────────────────────────────────────────────

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolInvocation(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Optional[dict[str, JsonValue]] = None


class UnknownBlock(BaseModel):
    type: str


ContentBlock = Union[TextBlock, ToolInvocation, UnknownBlock]

_BLOCK_MODELS: dict[str, type[BaseModel]] = {
    "text": TextBlock,
    "tool_use": ToolInvocation,
}


def _parse_block(raw: Any) -> ContentBlock:
    if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
        raise ValueError("content block requires a string 'type'")
    model = _BLOCK_MODELS.get(raw["type"])
    if model is None:
        return UnknownBlock(type=raw["type"])
    return model.model_validate(raw)


def _parse_blocks(raw: Any) -> list[ContentBlock]:
    if not isinstance(raw, list):
        raise ValueError("content must be a list of blocks")
    return [_parse_block(item) for item in raw]


# ── Message variants ───────────────────────────────────────────────

class _Message(BaseModel):
    type: str

    @property
    def kind(self) -> str:
        return self.type


class UserContent(BaseModel):
    role: str
    content: Union[str, list[ContentBlock]] = ""

    @field_validator("content", mode="before")
    @classmethod
    def _lenient_content(cls, value: Any) -> Any:
        # Anything other than a string or a well-formed block list reads as empty text.
        if isinstance(value, str):
            return value
        try:
            return _parse_blocks(value)
        except ValueError:
            return ""


class AssistantContent(BaseModel):
    role: str
    content: list[ContentBlock]
    model: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def _typed_blocks(cls, value: Any) -> list[ContentBlock]:
        return _parse_blocks(value)


class _Turn(_Message):
    sessionId: str
    uuid: str
    timestamp: str
    cwd: Optional[str] = None
    gitBranch: Optional[str] = None


class UserTurn(_Turn):
    type: Literal["user"] = "user"
    message: UserContent


class AssistantTurn(_Turn):
    type: Literal["assistant"] = "assistant"
    message: AssistantContent


class Summary(_Message):
    type: Literal["summary"] = "summary"
    summary: str
    leafUuid: Optional[str] = None


class SnapshotMarker(_Message):
    type: Literal["file-history-snapshot"] = "file-history-snapshot"
    messageId: str
    isSnapshotUpdate: Optional[bool] = None


class QueueOp(_Message):
    type: Literal["queue-operation"] = "queue-operation"
    operation: str
    timestamp: str
    sessionId: str


class Unrecognized(_Message):
    """A line whose ``type`` we do not know; only the tag is retained."""


TranscriptMessage = Union[UserTurn, AssistantTurn, Summary, SnapshotMarker, QueueOp, Unrecognized]

_MESSAGE_MODELS: dict[str, type[_Message]] = {
    "user": UserTurn,
    "assistant": AssistantTurn,
    "summary": Summary,
    "file-history-snapshot": SnapshotMarker,
    "queue-operation": QueueOp,
}


class SessionInfo(BaseModel):
    externalSessionId: str
    workingDirectory: Optional[str] = None
    branch: Optional[str] = None
    timestamp: str


# ── Parsing ────────────────────────────────────────────────────────

def parse_line(raw: str) -> Optional[TranscriptMessage]:
    """Parse one JSONL line. Returns None for blank or undecodable lines."""
    line = raw.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except (ValueError, RecursionError):
        return None
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    if not isinstance(kind, str):
        return None

    model = _MESSAGE_MODELS.get(kind)
    if model is None:
        return Unrecognized(type=kind)
    try:
        return model.model_validate(payload)
    except ValueError:
        # pydantic.ValidationError is a ValueError
        return None


def parse_lines(content: str) -> list[TranscriptMessage]:
    """Parse newline-delimited content, silently dropping bad or empty lines.

    Splits on ``\\n`` only: JSON strings may legally carry raw U+2028/U+2029,
    which ``str.splitlines`` would treat as line breaks.
    """
    messages: list[TranscriptMessage] = []
    for raw in content.split("\n"):
        message = parse_line(raw)
        if message is not None:
            messages.append(message)
    return messages


def session_info(message: TranscriptMessage) -> Optional[SessionInfo]:
    if isinstance(message, (UserTurn, AssistantTurn)):
        return SessionInfo(
            externalSessionId=message.sessionId,
            workingDirectory=message.cwd,
            branch=message.gitBranch,
            timestamp=message.timestamp,
        )
    return None


def tool_invocations(message: TranscriptMessage) -> list[ToolInvocation]:
    if not isinstance(message, AssistantTurn):
        return []
    return [block for block in message.message.content if isinstance(block, ToolInvocation)]

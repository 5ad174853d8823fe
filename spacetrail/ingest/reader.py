"""Incremental transcript reader.

Reads only the bytes appended to a transcript since a known offset and hands
them to the line parser. The reader never touches the offset store; callers
decide whether to keep the returned offset.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from spacetrail.parsers.transcript import TranscriptMessage, parse_lines

logger = logging.getLogger("spacetrail.ingest")


@dataclass
class ReadResult:
    messages: list[TranscriptMessage] = field(default_factory=list)
    new_offset: int = 0
    bytes_read: int = 0
    truncated: bool = False  # offset was past EOF and got clamped


def _is_complete_json(fragment: bytes) -> bool:
    try:
        json.loads(fragment.decode("utf-8"))
    except (ValueError, RecursionError):
        return False
    return True


def _consumable_length(data: bytes) -> int:
    """Length of the prefix of ``data`` that ends on a line boundary.

    A trailing fragment without a newline is only consumed when it already
    decodes as a whole JSON value; otherwise the writer is mid-line and the
    fragment is left for the next read.
    """
    last_newline = data.rfind(b"\n")
    tail = data[last_newline + 1:]
    if not tail.strip() or _is_complete_json(tail):
        return len(data)
    return last_newline + 1


def read_from(path: Path | str, offset: int) -> ReadResult:
    """Read and parse everything appended to ``path`` after ``offset``.

    Raises OSError when the file cannot be opened.
    """
    offset = max(0, int(offset))
    with open(path, "rb") as handle:
        size = os.fstat(handle.fileno()).st_size
        if offset > size:
            logger.info(f"Transcript {path} is shorter than its offset ({offset} > {size}), clamping to EOF")
            return ReadResult(new_offset=size, truncated=True)
        handle.seek(offset)
        # Bounded by the size observed above, even if the writer keeps appending.
        data = handle.read(size - offset)

    consumed = _consumable_length(data)
    try:
        text = data[:consumed].decode("utf-8")
    except UnicodeDecodeError as exc:
        logger.warning(f"Undecodable bytes in {path} after offset {offset}: {exc}")
        return ReadResult(new_offset=offset)

    return ReadResult(
        messages=parse_lines(text),
        new_offset=offset + consumed,
        bytes_read=consumed,
    )

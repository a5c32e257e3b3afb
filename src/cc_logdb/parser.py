"""Decoding of transcript and history JSONL files."""

import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cc_logdb.models import (
    AssistantEntry,
    ContentSegment,
    HistoryEntry,
    OtherEntry,
    ParseResult,
    SessionMeta,
    TranscriptEntry,
    UserEntry,
)

logger = logging.getLogger(__name__)

MIN_TIMESTAMP_MS = -(2**63)
MAX_TIMESTAMP_MS = 2**63 - 1


class RecordError(ValueError):
    """Raised when a decoded JSON value is not a valid record."""


def _optional_str(record: dict[str, Any], key: str) -> str | None:
    value = record.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RecordError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def parse_timestamp(value: Any) -> int | None:
    """Convert a record timestamp to milliseconds since epoch.

    Numbers pass through; strings are parsed as ISO-8601 dates (naive values
    are taken as UTC). Anything else, an unparsable string, a non-finite
    number, or a value outside the 64-bit integer range gives None.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        ms = int(value)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        ms = int(dt.timestamp() * 1000)
    else:
        return None
    # Must fit a SQLite INTEGER
    if not MIN_TIMESTAMP_MS <= ms <= MAX_TIMESTAMP_MS:
        return None
    return ms


def _decode_content(value: Any) -> str | list[ContentSegment] | None:
    if isinstance(value, str):
        return value
    if not isinstance(value, list):
        return None

    segments: list[ContentSegment] = []
    for block in value:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if not isinstance(block_type, str):
            continue
        text = block.get("text")
        name = block.get("name")
        segments.append(
            ContentSegment(
                type=block_type,
                text=text if isinstance(text, str) else None,
                name=name if isinstance(name, str) else None,
            )
        )
    return segments


def decode_record(record: Any) -> TranscriptEntry:
    """Map one decoded transcript line to its typed variant.

    Raises RecordError if the value does not have the shape of a record.
    """
    if not isinstance(record, dict):
        raise RecordError("record is not an object")

    record_type = record.get("type")
    if not isinstance(record_type, str):
        raise RecordError("record has no string 'type'")

    if record_type not in ("user", "assistant"):
        return OtherEntry(type=record_type)

    message = record.get("message")
    if message is None:
        message = {}
    if not isinstance(message, dict):
        raise RecordError("'message' is not an object")

    model = message.get("model")
    entry_cls = UserEntry if record_type == "user" else AssistantEntry
    return entry_cls(
        session_id=_optional_str(record, "sessionId"),
        uuid=_optional_str(record, "uuid"),
        parent_uuid=_optional_str(record, "parentUuid"),
        timestamp=parse_timestamp(record.get("timestamp")),
        content=_decode_content(message.get("content")),
        model=model if isinstance(model, str) else None,
    )


def _iter_json_lines(path: Path):
    """Yield (line number, decoded value or JSONDecodeError) for non-blank lines."""
    with open(path, encoding="utf-8", errors="replace") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield line_num, json.loads(line)
            except json.JSONDecodeError as exc:
                yield line_num, exc


def parse_transcript(path: Path) -> ParseResult:
    """Parse a JSONL transcript file, counting malformed lines instead of failing."""
    result = ParseResult()
    for line_num, value in _iter_json_lines(path):
        if isinstance(value, json.JSONDecodeError):
            logger.debug("%s:%d: invalid JSON (%s)", path, line_num, value.msg)
            result.skipped += 1
            continue
        try:
            result.entries.append(decode_record(value))
        except RecordError as exc:
            logger.debug("%s:%d: %s", path, line_num, exc)
            result.skipped += 1
    return result


def decode_history_record(record: Any) -> HistoryEntry:
    """Map one decoded history line to a HistoryEntry."""
    if not isinstance(record, dict):
        raise RecordError("record is not an object")
    session_id = record.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        raise RecordError("record has no 'sessionId'")
    return HistoryEntry(
        session_id=session_id,
        project=_optional_str(record, "project"),
        display=_optional_str(record, "display"),
        timestamp=parse_timestamp(record.get("timestamp")),
    )


def load_history(path: Path) -> tuple[dict[str, SessionMeta], int]:
    """Build the session -> (project, display) lookup from the history index.

    The first occurrence of a session wins. Returns the lookup and the number
    of malformed lines skipped.
    """
    meta: dict[str, SessionMeta] = {}
    skipped = 0
    if not path.exists():
        return meta, skipped

    for _, value in _iter_json_lines(path):
        if isinstance(value, json.JSONDecodeError):
            skipped += 1
            continue
        try:
            entry = decode_history_record(value)
        except RecordError:
            skipped += 1
            continue
        if entry.session_id in meta:
            continue
        meta[entry.session_id] = SessionMeta(project=entry.project or "", display=entry.display)
    return meta, skipped


def extract_text(content: str | list[ContentSegment] | None) -> str | None:
    """Plain text of a message; only text segments of structured content count."""
    if content is None:
        return None
    if isinstance(content, str):
        text = content
    else:
        text = "\n".join(s.text for s in content if s.type == "text" and s.text is not None)
    return text or None


def extract_tools(content: str | list[ContentSegment] | None) -> list[str] | None:
    """Names of the tools invoked by a message, or None."""
    if not isinstance(content, list):
        return None
    tools = [s.name for s in content if s.type == "tool_use" and s.name is not None]
    return tools or None


def project_from_dirname(name: str) -> str:
    """Fallback project path from an encoded projects directory name.

    "-Users-name-Code-project" -> "Users/name/Code/project"
    """
    if name.startswith("-"):
        name = name[1:]
    return name.replace("-", "/")

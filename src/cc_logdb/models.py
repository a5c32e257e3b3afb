"""Data models for cc-logdb."""

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class FileFingerprint:
    """Cheap change detector for a transcript file (not a content hash)."""

    path: str
    mtime_ms: int
    size: int


@dataclass
class ContentSegment:
    """One typed segment of structured message content."""

    type: str
    text: str | None = None
    name: str | None = None


@dataclass
class ConversationEntry:
    """A user or assistant record from a transcript file."""

    session_id: str | None
    uuid: str | None
    parent_uuid: str | None
    timestamp: int | None
    content: str | list[ContentSegment] | None
    model: str | None = None

    role = ""


@dataclass
class UserEntry(ConversationEntry):
    role = "user"


@dataclass
class AssistantEntry(ConversationEntry):
    role = "assistant"


@dataclass
class OtherEntry:
    """Any record kind that is not ingested (summaries, system, snapshots)."""

    type: str


TranscriptEntry = UserEntry | AssistantEntry | OtherEntry


@dataclass
class ParseResult:
    """Decoded records of one transcript file."""

    entries: list[TranscriptEntry] = field(default_factory=list)
    skipped: int = 0  # malformed lines


@dataclass
class HistoryEntry:
    """A line of the global history index."""

    session_id: str
    project: str | None = None
    display: str | None = None
    timestamp: int | None = None


@dataclass
class SessionMeta:
    """Session-level metadata resolved before ingestion."""

    project: str
    display: str | None = None


@dataclass
class Message:
    """A normalized message row."""

    session_id: str
    project: str
    display: str | None
    uuid: str | None
    parent_uuid: str | None
    role: str  # "user" | "assistant"
    text: str | None
    tools: list[str] | None
    model: str | None
    timestamp: int | None  # ms since epoch


@dataclass
class Chunk:
    """Conversation summary of one session, the unit of embedding."""

    id: int | None
    session_id: str
    project: str
    text: str
    hash: str
    ts_start: int | None
    ts_end: int | None


@dataclass
class PendingSession:
    """A session whose chunk or embedding needs (re)building."""

    session_id: str
    project: str
    ts_start: int | None
    ts_end: int | None
    chunk_id: int | None = None
    chunk_hash: str | None = None


@dataclass
class IngestReport:
    """Outcome of ingesting one changed transcript file."""

    path: Path
    session_id: str
    inserted: int
    previous: int
    is_new: bool
    skipped_lines: int = 0

    @property
    def delta(self) -> int:
        return self.inserted - self.previous


@dataclass
class EmbedReport:
    """Outcome of one embedding phase."""

    pending: int = 0
    embedded: int = 0
    failed: int = 0
    too_short: int = 0
    provider_unreachable: bool = False
    # Set when the provider returned vectors of the wrong size; the phase stopped
    dimension_error: str | None = None


@dataclass
class SyncSummary:
    """Aggregate result of a sync run, formatted by the caller."""

    files_scanned: int = 0
    files_unchanged: int = 0
    files_failed: int = 0
    new_messages: int = 0
    new_sessions: int = 0
    updated_sessions: int = 0
    malformed_lines: int = 0
    history_malformed_lines: int = 0
    embedding: EmbedReport | None = None
    total_messages: int = 0
    total_chunks: int = 0


@dataclass
class KeywordHit:
    """A message matched by keyword search."""

    session_id: str
    project: str
    role: str
    preview: str
    time: str | None
    timestamp: int | None


@dataclass
class SemanticHit:
    """A chunk matched by vector search."""

    session_id: str
    project: str
    started: str | None
    ended: str | None
    preview: str
    distance: float


@dataclass
class SessionMessage:
    """One message of a session drill-down."""

    role: str
    text: str
    time: str | None

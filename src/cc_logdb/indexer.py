"""Incremental JSONL transcript indexer."""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from cc_logdb.chunker import ChunkBuilder
from cc_logdb.embeddings import Embedder
from cc_logdb.models import (
    ConversationEntry,
    IngestReport,
    Message,
    SessionMeta,
    SyncSummary,
)
from cc_logdb.parser import (
    extract_text,
    extract_tools,
    load_history,
    parse_transcript,
    project_from_dirname,
)
from cc_logdb.storage import (
    count_session_messages,
    delete_session_messages,
    get_totals,
    insert_messages,
    set_metadata,
)
from cc_logdb.syncer import EmbeddingSyncer, ProgressCallback
from cc_logdb.tracker import ChangeTracker

logger = logging.getLogger(__name__)


def discover_transcripts(projects_dir: Path) -> list[Path]:
    """Discover the JSONL transcripts directly under each project directory."""
    if not projects_dir.exists():
        return []
    return sorted(p for p in projects_dir.glob("*/*.jsonl") if p.is_file())


class MessageIngester:
    """Replaces a session's stored messages with the content of its transcript file."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        tracker: ChangeTracker,
        session_meta: dict[str, SessionMeta],
    ) -> None:
        self.conn = conn
        self.tracker = tracker
        self.session_meta = session_meta

    def resolve_meta(self, session_id: str, path: Path) -> SessionMeta:
        """History metadata of a session, or a project derived from its directory."""
        meta = self.session_meta.get(session_id)
        if meta is not None:
            return meta
        return SessionMeta(project=project_from_dirname(path.parent.name), display=None)

    def to_messages(self, entries: list, session_id: str, meta: SessionMeta) -> list[Message]:
        """Normalize user/assistant entries into message rows; other kinds are dropped."""
        return [
            Message(
                session_id=session_id,
                project=meta.project,
                display=meta.display,
                uuid=entry.uuid,
                parent_uuid=entry.parent_uuid,
                role=entry.role,
                text=extract_text(entry.content),
                tools=extract_tools(entry.content),
                model=entry.model,
                timestamp=entry.timestamp,
            )
            for entry in entries
            if isinstance(entry, ConversationEntry)
        ]

    def ingest_file(self, path: Path) -> IngestReport | None:
        """Ingest a transcript file if it changed since the last run.

        The delete of old messages, the insert of new ones, and the
        fingerprint update are one transaction. Returns None when unchanged.
        """
        if not self.tracker.should_process(path):
            return None

        # Taken before reading so a write during the read triggers another pass
        fingerprint = self.tracker.fingerprint(path)
        previous = self.tracker.previous(path)

        session_id = path.stem
        meta = self.resolve_meta(session_id, path)
        parsed = parse_transcript(path)
        messages = self.to_messages(parsed.entries, session_id, meta)

        with self.conn:
            prev_count = 0
            if previous is not None:
                prev_count = count_session_messages(self.conn, session_id)
                delete_session_messages(self.conn, session_id)
            insert_messages(self.conn, messages)
            self.tracker.commit(path, fingerprint.mtime_ms, fingerprint.size)

        logger.debug(
            "Ingested %s: %d messages (%d before)", path.name, len(messages), prev_count
        )
        return IngestReport(
            path=path,
            session_id=session_id,
            inserted=len(messages),
            previous=prev_count,
            is_new=previous is None,
            skipped_lines=parsed.skipped,
        )


def sync_messages(
    conn: sqlite3.Connection,
    projects_dir: Path,
    history_path: Path,
    summary: SyncSummary,
) -> None:
    """Ingest every changed transcript, accumulating counts into `summary`."""
    session_meta, summary.history_malformed_lines = load_history(history_path)
    ingester = MessageIngester(conn, ChangeTracker(conn), session_meta)

    for path in discover_transcripts(projects_dir):
        summary.files_scanned += 1
        try:
            report = ingester.ingest_file(path)
        except (OSError, ValueError, OverflowError, sqlite3.Error) as exc:
            logger.warning("Skipping %s: %s", path, exc)
            summary.files_failed += 1
            continue

        if report is None:
            summary.files_unchanged += 1
            continue

        summary.new_messages += report.delta
        summary.malformed_lines += report.skipped_lines
        if report.is_new:
            summary.new_sessions += 1
        else:
            summary.updated_sessions += 1


def run_sync(
    conn: sqlite3.Connection,
    projects_dir: Path,
    history_path: Path,
    embedder: Embedder | None = None,
    refresh_stale: bool = False,
    progress: ProgressCallback | None = None,
) -> SyncSummary:
    """Sync messages, then chunks and embeddings.

    Without an embedder only messages are synced.
    """
    summary = SyncSummary()
    sync_messages(conn, projects_dir, history_path, summary)

    if embedder is not None:
        builder = ChunkBuilder(conn, refresh_stale=refresh_stale)
        summary.embedding = EmbeddingSyncer(conn, embedder, builder).run(progress)

    summary.total_messages, summary.total_chunks = get_totals(conn)
    set_metadata(conn, "last_synced", datetime.now(tz=timezone.utc).isoformat())
    return summary

"""Conversation-chunk construction for session messages."""

import hashlib
import sqlite3

from cc_logdb.models import Chunk, PendingSession
from cc_logdb.storage import embedded_chunk_ids, save_chunk

MAX_MESSAGE_CHARS = 2000  # per message, before rendering
MIN_CONVERSATION_CHARS = 50  # below this a session is not worth embedding
MAX_CHUNK_CHARS = 8000  # whole chunk


def render_conversation(rows: list[tuple[str, str]]) -> str:
    """Render (role, text) pairs as "role: text" lines, each text capped."""
    return "\n".join(f"{role}: {text[:MAX_MESSAGE_CHARS]}" for role, text in rows)


def finalize_chunk_text(conversation: str) -> str | None:
    """Apply the minimum and maximum size rules to a rendered conversation.

    Returns None when the conversation is too short to produce a chunk.
    """
    if len(conversation) < MIN_CONVERSATION_CHARS:
        return None
    return conversation[:MAX_CHUNK_CHARS]


def content_hash(text: str) -> str:
    """SHA-256 hex digest of chunk text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class ChunkBuilder:
    """Derives one conversation chunk per session from its ingested messages.

    By default a session is pending only while its chunk or its embedding is
    missing, so a complete chunk is never rebuilt when the session grows.
    With ``refresh_stale`` the stored content hash is also compared against a
    fresh rendering and mismatching sessions are rebuilt.
    """

    def __init__(self, conn: sqlite3.Connection, refresh_stale: bool = False) -> None:
        self.conn = conn
        self.refresh_stale = refresh_stale

    def pending_sessions(self) -> list[PendingSession]:
        """Sessions with text whose chunk or embedding needs building."""
        rows = self.conn.execute("""
            SELECT m.session_id, m.project,
                   MIN(m.timestamp) AS ts_start, MAX(m.timestamp) AS ts_end,
                   c.id AS chunk_id, c.hash AS chunk_hash
            FROM messages m
            LEFT JOIN chunks c ON c.session_id = m.session_id
            WHERE m.text IS NOT NULL
            GROUP BY m.session_id
            ORDER BY MIN(m.id)
        """).fetchall()

        embedded = embedded_chunk_ids(self.conn)
        pending: list[PendingSession] = []
        for row in rows:
            session = PendingSession(
                session_id=row["session_id"],
                project=row["project"],
                ts_start=row["ts_start"],
                ts_end=row["ts_end"],
                chunk_id=row["chunk_id"],
                chunk_hash=row["chunk_hash"],
            )
            if session.chunk_id is None or session.chunk_id not in embedded:
                pending.append(session)
            elif self.refresh_stale and self._is_stale(session):
                pending.append(session)
        return pending

    def _is_stale(self, session: PendingSession) -> bool:
        text = self.chunk_text(session.session_id)
        return text is not None and content_hash(text) != session.chunk_hash

    def conversation_text(self, session_id: str) -> str:
        """Full rendered conversation of a session, before the overall cap.

        Pure tool-use turns are left out.
        """
        rows = self.conn.execute(
            """
            SELECT role, text FROM messages
            WHERE session_id = ? AND text IS NOT NULL
              AND role IN ('user', 'assistant')
              AND tools IS NULL
            ORDER BY timestamp, id
            """,
            (session_id,),
        ).fetchall()
        return render_conversation([(row["role"], row["text"]) for row in rows])

    def chunk_text(self, session_id: str) -> str | None:
        """Final chunk text of a session, or None if it is too short."""
        return finalize_chunk_text(self.conversation_text(session_id))

    def build(self, session: PendingSession) -> Chunk | None:
        """Build and store the chunk of a pending session.

        Returns None (storing nothing) when the conversation is too short; the
        session then stays pending for the next run.
        """
        text = self.chunk_text(session.session_id)
        if text is None:
            return None

        chunk = Chunk(
            id=None,
            session_id=session.session_id,
            project=session.project,
            text=text,
            hash=content_hash(text),
            ts_start=session.ts_start,
            ts_end=session.ts_end,
        )
        with self.conn:
            chunk.id = save_chunk(self.conn, chunk)
        return chunk

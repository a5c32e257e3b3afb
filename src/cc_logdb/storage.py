"""SQLite storage for the cc-logdb index."""

import json
import sqlite3
from pathlib import Path
from typing import Any

import sqlite_vec

from cc_logdb.models import Chunk, FileFingerprint, Message


class SchemaError(RuntimeError):
    """Raised when an existing index is incompatible with the configuration."""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a connection to the index database with sqlite-vec loaded."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    # One writer, concurrent readers
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def init_schema(conn: sqlite3.Connection, embedding_dim: int) -> None:
    """Initialize the database schema.

    The vector dimension is fixed when the index is created; opening it again
    with another dimension raises SchemaError.
    """
    if embedding_dim < 1:
        raise SchemaError(f"embedding dimension must be >= 1, got {embedding_dim}")

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS messages (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id  TEXT NOT NULL,
            project     TEXT NOT NULL,
            display     TEXT,
            uuid        TEXT,
            parent_uuid TEXT,
            role        TEXT NOT NULL,
            text        TEXT,
            tools       TEXT,  -- JSON array
            model       TEXT,
            timestamp   INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_messages_session   ON messages(session_id);
        CREATE INDEX IF NOT EXISTS idx_messages_project   ON messages(project);
        CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);

        -- FTS5 for keyword search; NULL text is never indexed
        CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
            text,
            content='messages',
            content_rowid='id'
        );

        CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages
        WHEN new.text IS NOT NULL BEGIN
            INSERT INTO messages_fts(rowid, text) VALUES (new.id, new.text);
        END;

        CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages
        WHEN old.text IS NOT NULL BEGIN
            INSERT INTO messages_fts(messages_fts, rowid, text) VALUES('delete', old.id, old.text);
        END;

        CREATE TABLE IF NOT EXISTS chunks (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id  TEXT NOT NULL UNIQUE,
            project     TEXT NOT NULL,
            text        TEXT NOT NULL,
            hash        TEXT NOT NULL,
            ts_start    INTEGER,
            ts_end      INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_project ON chunks(project);

        -- Fingerprints of ingested transcript files
        CREATE TABLE IF NOT EXISTS file_state (
            path   TEXT PRIMARY KEY,
            mtime  INTEGER NOT NULL,
            size   INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
    """)

    stored_dim = get_metadata(conn, "embedding_dim")
    if stored_dim is not None and int(stored_dim) != embedding_dim:
        raise SchemaError(
            f"Index was created with embedding dimension {stored_dim}, "
            f"but {embedding_dim} is configured. Rebuild the index to change it."
        )

    # Vector rows are keyed by chunks.id (rowid)
    conn.execute(
        f"CREATE VIRTUAL TABLE IF NOT EXISTS chunks_vec USING vec0(embedding float[{embedding_dim}])"
    )
    if stored_dim is None:
        set_metadata(conn, "embedding_dim", str(embedding_dim))
    conn.commit()


def open_index(db_path: Path, embedding_dim: int) -> sqlite3.Connection:
    """Open (creating if needed) the index database and ensure its schema."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    try:
        init_schema(conn, embedding_dim)
    except Exception:
        conn.close()
        raise
    return conn


def reset_index(db_path: Path) -> None:
    """Delete the index database and its WAL/SHM files."""
    for suffix in ("", "-wal", "-shm"):
        Path(f"{db_path}{suffix}").unlink(missing_ok=True)


# File state


def get_fingerprint(conn: sqlite3.Connection, path: str) -> FileFingerprint | None:
    """Get the recorded fingerprint of a transcript file."""
    row = conn.execute("SELECT mtime, size FROM file_state WHERE path = ?", (path,)).fetchone()
    if row is None:
        return None
    return FileFingerprint(path=path, mtime_ms=row["mtime"], size=row["size"])


def save_fingerprint(conn: sqlite3.Connection, fingerprint: FileFingerprint) -> None:
    """Record a fingerprint. Does not commit."""
    conn.execute(
        "INSERT OR REPLACE INTO file_state (path, mtime, size) VALUES (?, ?, ?)",
        (fingerprint.path, fingerprint.mtime_ms, fingerprint.size),
    )


# Messages


def count_session_messages(conn: sqlite3.Connection, session_id: str) -> int:
    """Count stored messages of a session."""
    return conn.execute(
        "SELECT COUNT(*) FROM messages WHERE session_id = ?", (session_id,)
    ).fetchone()[0]


def delete_session_messages(conn: sqlite3.Connection, session_id: str) -> None:
    """Delete all messages of a session (triggers clean up FTS). Does not commit."""
    conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))


def insert_messages(conn: sqlite3.Connection, messages: list[Message]) -> None:
    """Insert message rows in order. Does not commit."""
    conn.executemany(
        """
        INSERT INTO messages
            (session_id, project, display, uuid, parent_uuid, role, text, tools, model, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                m.session_id,
                m.project,
                m.display,
                m.uuid,
                m.parent_uuid,
                m.role,
                m.text,
                json.dumps(m.tools) if m.tools else None,
                m.model,
                m.timestamp,
            )
            for m in messages
        ],
    )


# Chunks and vectors


def save_chunk(conn: sqlite3.Connection, chunk: Chunk) -> int:
    """Insert or update the chunk of a session, keeping its id stable.

    Returns the chunk id. Does not commit.
    """
    conn.execute(
        """
        INSERT INTO chunks (session_id, project, text, hash, ts_start, ts_end)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(session_id) DO UPDATE SET
            project = excluded.project,
            text = excluded.text,
            hash = excluded.hash,
            ts_start = excluded.ts_start,
            ts_end = excluded.ts_end
        """,
        (chunk.session_id, chunk.project, chunk.text, chunk.hash, chunk.ts_start, chunk.ts_end),
    )
    row = conn.execute("SELECT id FROM chunks WHERE session_id = ?", (chunk.session_id,)).fetchone()
    return row["id"]


def embedded_chunk_ids(conn: sqlite3.Connection) -> set[int]:
    """Ids of all chunks that have a vector."""
    return {row[0] for row in conn.execute("SELECT rowid FROM chunks_vec")}


def has_embedding(conn: sqlite3.Connection, chunk_id: int) -> bool:
    """Check whether a chunk has a vector."""
    row = conn.execute("SELECT rowid FROM chunks_vec WHERE rowid = ?", (chunk_id,)).fetchone()
    return row is not None


def save_embedding(conn: sqlite3.Connection, chunk_id: int, embedding: list[float]) -> None:
    """Insert the vector of a chunk, or overwrite it if present. Does not commit."""
    blob = sqlite_vec.serialize_float32(embedding)
    if has_embedding(conn, chunk_id):
        conn.execute("UPDATE chunks_vec SET embedding = ? WHERE rowid = ?", (blob, chunk_id))
    else:
        conn.execute("INSERT INTO chunks_vec (rowid, embedding) VALUES (?, ?)", (chunk_id, blob))


# Metadata and stats


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a metadata value."""
    conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        (key, value),
    )
    conn.commit()


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a metadata value."""
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def get_totals(conn: sqlite3.Connection) -> tuple[int, int]:
    """Return (message count, chunk count)."""
    row = conn.execute(
        "SELECT (SELECT COUNT(*) FROM messages) AS msgs, (SELECT COUNT(*) FROM chunks) AS chunks"
    ).fetchone()
    return row["msgs"], row["chunks"]


def get_index_stats(conn: sqlite3.Connection, db_path: Path) -> dict[str, Any]:
    """Get index statistics."""
    message_count, chunk_count = get_totals(conn)
    session_count = conn.execute("SELECT COUNT(DISTINCT session_id) FROM messages").fetchone()[0]
    embedded_count = conn.execute("SELECT COUNT(*) FROM chunks_vec").fetchone()[0]
    index_size = db_path.stat().st_size if db_path.exists() else 0
    return {
        "session_count": session_count,
        "message_count": message_count,
        "chunk_count": chunk_count,
        "embedded_count": embedded_count,
        "index_path": str(db_path),
        "index_size_human": _format_size(index_size),
        "last_synced": get_metadata(conn, "last_synced"),
    }


def get_all_projects(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """Get all projects with their session and message counts."""
    rows = conn.execute("""
        SELECT project,
               COUNT(DISTINCT session_id) AS session_count,
               COUNT(*) AS message_count,
               MAX(timestamp) AS last_timestamp
        FROM messages
        GROUP BY project
        ORDER BY last_timestamp DESC
    """).fetchall()
    return [
        {
            "project": row["project"],
            "sessions": row["session_count"],
            "messages": row["message_count"],
            "last_timestamp": row["last_timestamp"],
        }
        for row in rows
    ]


def _format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"

"""Change detection for transcript files."""

import sqlite3
from pathlib import Path

from cc_logdb.models import FileFingerprint
from cc_logdb.storage import get_fingerprint, save_fingerprint


class ChangeTracker:
    """Decides whether a transcript file needs reprocessing.

    A file is compared by (mtime, size) only. Edits that keep both unchanged
    go unnoticed.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @staticmethod
    def fingerprint(path: Path) -> FileFingerprint:
        """Current fingerprint of a file on disk."""
        stat = path.stat()
        return FileFingerprint(path=str(path), mtime_ms=stat.st_mtime_ns // 1_000_000, size=stat.st_size)

    def previous(self, path: Path) -> FileFingerprint | None:
        """Fingerprint recorded by the last successful ingestion, if any."""
        return get_fingerprint(self.conn, str(path))

    def should_process(self, path: Path) -> bool:
        """True if the file was never ingested or its mtime or size changed."""
        prev = self.previous(path)
        if prev is None:
            return True
        current = self.fingerprint(path)
        return prev.mtime_ms != current.mtime_ms or prev.size != current.size

    def commit(self, path: Path, mtime_ms: int, size: int) -> None:
        """Record a new fingerprint.

        Runs inside the caller's transaction; call only once the file's
        messages have been written.
        """
        save_fingerprint(self.conn, FileFingerprint(path=str(path), mtime_ms=mtime_ms, size=size))

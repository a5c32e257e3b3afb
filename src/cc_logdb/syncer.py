"""Embedding generation for pending conversation chunks."""

import logging
import sqlite3
from collections.abc import Callable

from cc_logdb.chunker import MAX_CHUNK_CHARS, ChunkBuilder
from cc_logdb.embeddings import DimensionMismatchError, Embedder, EmbeddingError
from cc_logdb.models import EmbedReport
from cc_logdb.storage import save_embedding

logger = logging.getLogger(__name__)

# (sessions done, sessions total, chars embedded, estimated chars total)
ProgressCallback = Callable[[int, int, int, int], None]


class EmbeddingSyncer:
    """Builds missing chunks and stores their embeddings, one session at a time."""

    def __init__(self, conn: sqlite3.Connection, embedder: Embedder, builder: ChunkBuilder) -> None:
        self.conn = conn
        self.embedder = embedder
        self.builder = builder

    def estimate_chars(self, session_ids: list[str]) -> int:
        """Estimated chunk size of the given sessions, for progress only."""
        return sum(
            min(len(self.builder.conversation_text(sid)), MAX_CHUNK_CHARS) for sid in session_ids
        )

    def run(self, progress: ProgressCallback | None = None) -> EmbedReport:
        """Embed every pending session.

        Provider failures are logged and leave the session pending for the
        next run. A dimension mismatch ends the phase and is recorded in the
        report; vectors stored before it are kept.
        """
        pending = self.builder.pending_sessions()
        report = EmbedReport(pending=len(pending))
        if not pending:
            return report

        if not self.embedder.ping():
            logger.warning(
                "Embedding provider is unreachable; skipping embeddings for %d sessions",
                len(pending),
            )
            report.provider_unreachable = True
            return report

        total_chars = self.estimate_chars([s.session_id for s in pending])
        done_chars = 0
        if progress:
            progress(0, len(pending), 0, total_chars)

        for i, session in enumerate(pending, 1):
            chunk = self.builder.build(session)
            if chunk is None:
                report.too_short += 1
            else:
                try:
                    vector = self.embedder.embed(chunk.text)
                except DimensionMismatchError as exc:
                    logger.error("Stopping embeddings: %s", exc)
                    report.dimension_error = str(exc)
                    break
                except EmbeddingError as exc:
                    logger.warning("Embedding failed for session %s: %s", session.session_id, exc)
                    report.failed += 1
                else:
                    with self.conn:
                        save_embedding(self.conn, chunk.id, vector)
                    report.embedded += 1
                    done_chars += len(chunk.text)
            if progress:
                progress(i, len(pending), done_chars, total_chars)

        return report

"""Keyword (FTS5) and vector (sqlite-vec) search over the index."""

import math
import re
import sqlite3
import time
from dataclasses import asdict
from typing import Any

import sqlite_vec
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from cc_logdb.embeddings import Embedder
from cc_logdb.models import KeywordHit, SemanticHit, SessionMessage

console = Console()

PREVIEW_CHARS = 300
SESSION_PREVIEW_CHARS = 500
DAY_MS = 86_400_000
MIN_SQLITE_INT = -(2**63)


class SearchError(RuntimeError):
    """A search could not be executed (bad query syntax, bad filter)."""


def collapse_newlines(text: str) -> str:
    return text.replace("\r", " ").replace("\n", " ")


class SearchEngine:
    """Read-only queries over messages, their keyword index, and chunk vectors.

    Optional filters: `project` is a GLOB pattern over the project path and
    `days` keeps only rows newer than now minus that many days. Both filters
    must hold for a row to be returned.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        embedder: Embedder | None = None,
        now: float | None = None,
    ) -> None:
        self.conn = conn
        self.embedder = embedder
        self._now = now

    def now_ms(self) -> int:
        return int((self._now if self._now is not None else time.time()) * 1000)

    def _filters(
        self, alias: str, time_column: str, project: str | None, days: float | None
    ) -> tuple[list[str], list[Any]]:
        wheres: list[str] = []
        params: list[Any] = []
        if project:
            wheres.append(f"{alias}.project GLOB ?")
            params.append(project)
        if days is not None:
            if not math.isfinite(days) or days < 0:
                raise SearchError(f"days must be a finite number >= 0, got {days}")
            wheres.append(f"{alias}.{time_column} > ?")
            span_ms = days * DAY_MS
            cutoff = self.now_ms() - int(span_ms) if math.isfinite(span_ms) else MIN_SQLITE_INT
            params.append(max(cutoff, MIN_SQLITE_INT))
        return wheres, params

    @staticmethod
    def _check_limit(limit: int) -> None:
        if limit < 1:
            raise SearchError(f"limit must be >= 1, got {limit}")

    def keyword_search(
        self,
        query: str,
        project: str | None = None,
        days: float | None = None,
        limit: int = 10,
    ) -> list[KeywordHit]:
        """Match an FTS5 query (AND, OR, NOT, "phrase", prefix*) against message text.

        Newest first; equal timestamps keep insertion order.
        """
        self._check_limit(limit)
        wheres, params = self._filters("m", "timestamp", project, days)
        where = "".join(f" AND {w}" for w in wheres)
        sql = f"""
            SELECT m.session_id, m.project, m.role, m.timestamp,
                   substr(m.text, 1, {PREVIEW_CHARS}) AS preview,
                   datetime(m.timestamp / 1000, 'unixepoch', 'localtime') AS time
            FROM messages_fts
            JOIN messages m ON m.id = messages_fts.rowid
            WHERE messages_fts MATCH ?{where}
            ORDER BY m.timestamp DESC, m.id ASC
            LIMIT ?
        """
        try:
            rows = self.conn.execute(sql, [query, *params, limit]).fetchall()
        except sqlite3.Error as exc:
            raise SearchError(f"keyword search failed: {exc}") from exc

        return [
            KeywordHit(
                session_id=row["session_id"],
                project=row["project"],
                role=row["role"],
                preview=collapse_newlines(row["preview"]),
                time=row["time"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    def vector_search(
        self,
        query: str,
        project: str | None = None,
        days: float | None = None,
        limit: int = 10,
    ) -> list[SemanticHit]:
        """Rank chunks by cosine distance to the query's embedding, nearest first.

        The day filter applies to the chunk's last message, so a conversation
        that started earlier but continued inside the window still matches.
        Provider errors propagate as EmbeddingError.
        """
        if self.embedder is None:
            raise SearchError("vector search needs an embedding provider")
        self._check_limit(limit)
        wheres, params = self._filters("c", "ts_end", project, days)
        query_vec = self.embedder.embed(query)

        where = f"WHERE {' AND '.join(wheres)}" if wheres else ""
        sql = f"""
            SELECT c.session_id, c.project,
                   datetime(c.ts_start / 1000, 'unixepoch', 'localtime') AS started,
                   datetime(c.ts_end / 1000, 'unixepoch', 'localtime') AS ended,
                   substr(c.text, 1, {PREVIEW_CHARS}) AS preview,
                   vec_distance_cosine(v.embedding, ?) AS distance
            FROM chunks_vec v
            JOIN chunks c ON c.id = v.rowid
            {where}
            ORDER BY distance, c.id
            LIMIT ?
        """
        try:
            rows = self.conn.execute(
                sql, [sqlite_vec.serialize_float32(query_vec), *params, limit]
            ).fetchall()
        except sqlite3.Error as exc:
            raise SearchError(f"vector search failed: {exc}") from exc

        return [
            SemanticHit(
                session_id=row["session_id"],
                project=row["project"],
                started=row["started"],
                ended=row["ended"],
                preview=collapse_newlines(row["preview"]),
                distance=row["distance"],
            )
            for row in rows
        ]

    def session_messages(self, session_id: str) -> list[SessionMessage]:
        """Every message with text of one session, oldest first."""
        rows = self.conn.execute(
            f"""
            SELECT role, substr(text, 1, {SESSION_PREVIEW_CHARS}) AS text,
                   datetime(timestamp / 1000, 'unixepoch', 'localtime') AS time
            FROM messages
            WHERE session_id = ? AND text IS NOT NULL
            ORDER BY timestamp, id
            """,
            (session_id,),
        ).fetchall()
        return [SessionMessage(role=row["role"], text=row["text"], time=row["time"]) for row in rows]


def highlight_matches(text: str, query: str) -> str:
    """Highlight query terms in text using Rich markup."""
    terms = re.findall(r"\w+", query.lower())

    for term in terms:
        # Skip very short terms and FTS operators
        if len(term) < 3 or term in ("and", "not"):
            continue
        pattern = re.compile(re.escape(term), re.IGNORECASE)
        text = pattern.sub(lambda m: f"[bold yellow]{m.group()}[/bold yellow]", text)

    return text


def format_keyword_results(hits: list[KeywordHit], query: str) -> None:
    """Print keyword hits for humans."""
    for hit in hits:
        header = Text()
        header.append(f"[{hit.time or 'unknown time'}] ", style="dim")
        header.append(hit.role, style="cyan" if hit.role == "user" else "green")
        header.append(f" ({hit.project})", style="dim")
        console.print(header)
        console.print(f"  session: {hit.session_id}", style="dim", highlight=False)
        console.print(f"  {highlight_matches(Text(hit.preview).markup, query)}")
        console.print()
    console.print(f"{len(hits)} results")


def format_semantic_results(hits: list[SemanticHit]) -> None:
    """Print vector hits for humans."""
    for hit in hits:
        panel = Panel(
            Text(hit.preview),
            title=f"distance: {hit.distance:.4f} | {hit.project}",
            subtitle=f"{hit.started} -> {hit.ended} | session: {hit.session_id}",
            subtitle_align="left",
        )
        console.print(panel)
    console.print(f"{len(hits)} results")


def format_session(messages: list[SessionMessage]) -> None:
    """Print a session drill-down."""
    for msg in messages:
        style = "cyan" if msg.role == "user" else "green"
        console.print(f"\n[dim]\\[{msg.time}][/dim] [{style}]{msg.role}:[/{style}]")
        console.print(Text(msg.text))


def format_json_output(hits: list[Any], query: str | None, search_time_ms: int) -> None:
    """Print results as JSON for programmatic use."""
    output = {
        "results": [asdict(hit) for hit in hits],
        "query": query,
        "total_results": len(hits),
        "search_time_ms": search_time_ms,
    }
    console.print_json(data=output)

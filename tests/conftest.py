"""Pytest fixtures for cc-logdb tests."""

import hashlib
import json
import tempfile
from pathlib import Path

import pytest

from cc_logdb.embeddings import EmbeddingError
from cc_logdb.models import Chunk, Message

EMBED_DIM = 4
BASE_TS = 1_700_000_000_000  # 2023-11-14T22:13:20Z in ms


def get_session_messages(conn, session_id):
    """Stored messages of a session in insertion order."""
    rows = conn.execute(
        "SELECT * FROM messages WHERE session_id = ? ORDER BY id", (session_id,)
    ).fetchall()
    return [
        Message(
            session_id=row["session_id"],
            project=row["project"],
            display=row["display"],
            uuid=row["uuid"],
            parent_uuid=row["parent_uuid"],
            role=row["role"],
            text=row["text"],
            tools=json.loads(row["tools"]) if row["tools"] else None,
            model=row["model"],
            timestamp=row["timestamp"],
        )
        for row in rows
    ]


def get_chunk(conn, session_id):
    """Stored chunk of a session, or None."""
    row = conn.execute("SELECT * FROM chunks WHERE session_id = ?", (session_id,)).fetchone()
    if row is None:
        return None
    return Chunk(
        id=row["id"],
        session_id=row["session_id"],
        project=row["project"],
        text=row["text"],
        hash=row["hash"],
        ts_start=row["ts_start"],
        ts_end=row["ts_end"],
    )


class FakeEmbedder:
    """Deterministic embedder.

    A text containing one of the `vectors` keys gets that vector; anything
    else gets a vector derived from its hash. Texts containing a `fail_on`
    marker raise EmbeddingError.
    """

    def __init__(self, dimension=EMBED_DIM, vectors=None, fail_on=None, reachable=True):
        self.dimension = dimension
        self.vectors = vectors or {}
        self.fail_on = fail_on
        self.reachable = reachable
        self.calls: list[str] = []
        self.pings = 0

    def embed(self, text):
        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise EmbeddingError("provider returned HTTP 500")
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255 + 0.01 for b in digest[: self.dimension]]

    def ping(self):
        self.pings += 1
        return self.reachable


def make_record(
    record_type,
    uuid,
    content,
    timestamp,
    session_id="session-1",
    parent_uuid=None,
    model=None,
):
    message = {"role": record_type, "content": content}
    if model:
        message["model"] = model
    return {
        "type": record_type,
        "uuid": uuid,
        "parentUuid": parent_uuid,
        "sessionId": session_id,
        "timestamp": timestamp,
        "message": message,
    }


def conversation(session_id, texts, start=BASE_TS, step=1000):
    """Alternating user/assistant records with the given texts."""
    records = []
    parent = None
    for i, text in enumerate(texts):
        role = "user" if i % 2 == 0 else "assistant"
        uuid = f"{session_id}-{i}"
        content = text if role == "user" else [{"type": "text", "text": text}]
        records.append(
            make_record(role, uuid, content, start + i * step, session_id=session_id, parent_uuid=parent)
        )
        parent = uuid
    return records


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def claude_dir(temp_dir):
    """A Claude directory with an empty projects/ folder."""
    root = temp_dir / "claude"
    (root / "projects").mkdir(parents=True)
    return root


@pytest.fixture
def projects_dir(claude_dir):
    return claude_dir / "projects"


@pytest.fixture
def history_path(claude_dir):
    return claude_dir / "history.jsonl"


@pytest.fixture
def write_transcript(projects_dir):
    """Write (or append) JSONL records to projects/<project_dir>/<session_id>.jsonl."""

    def _write(session_id, records, project_dir="-home-dev-app", append=False, raw_lines=()):
        directory = projects_dir / project_dir
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{session_id}.jsonl"
        with open(path, "a" if append else "w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record) + "\n")
            for line in raw_lines:
                f.write(line + "\n")
        return path

    return _write


@pytest.fixture
def write_history(history_path):
    def _write(entries, raw_lines=()):
        with open(history_path, "w", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry) + "\n")
            for line in raw_lines:
                f.write(line + "\n")
        return history_path

    return _write


@pytest.fixture
def conn(temp_dir):
    """An open, initialized index."""
    from cc_logdb.storage import open_index

    connection = open_index(temp_dir / "index" / "test.sqlite", EMBED_DIM)
    yield connection
    connection.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()

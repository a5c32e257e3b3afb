"""Tests for message ingestion and the sync entry point."""

import sqlite3
from unittest.mock import patch

import pytest

from cc_logdb.indexer import MessageIngester, discover_transcripts, run_sync
from cc_logdb.models import SessionMeta
from cc_logdb.parser import parse_transcript as real_parse
from cc_logdb.storage import count_session_messages
from cc_logdb.tracker import ChangeTracker
from tests.conftest import BASE_TS, conversation, get_chunk, get_session_messages, make_record

THREE_TURNS = [
    "How do I add pagination to the orders endpoint?",
    "Use limit and offset query parameters, validated by the serializer.",
    "Can you also make the default page size configurable?",
]


def _ingester(conn, meta=None):
    return MessageIngester(conn, ChangeTracker(conn), meta or {})


def test_discover_transcripts(projects_dir, write_transcript):
    write_transcript("b", [], project_dir="-p2")
    write_transcript("a", [], project_dir="-p1")
    nested = projects_dir / "-p1" / "a" / "subagents"
    nested.mkdir(parents=True)
    (nested / "agent.jsonl").write_text("")
    (projects_dir / "-p1" / "notes.txt").write_text("")

    found = discover_transcripts(projects_dir)

    assert [p.name for p in found] == ["a.jsonl", "b.jsonl"]


def test_discover_missing_dir(temp_dir):
    assert discover_transcripts(temp_dir / "nope") == []


def test_ingest_new_file(conn, write_transcript):
    records = [
        make_record("user", "u1", "How do I implement authentication?", "2024-01-15T10:00:00Z"),
        {"type": "summary", "summary": "Auth discussion"},
        make_record(
            "assistant",
            "a1",
            [
                {"type": "text", "text": "Use JWT tokens."},
                {"type": "tool_use", "name": "Read", "input": {}},
            ],
            "not a date",
            parent_uuid="u1",
            model="claude-sonnet",
        ),
        make_record("assistant", "a2", [{"type": "tool_use", "name": "Bash"}], 1705312900000),
    ]
    path = write_transcript("session-1", records, raw_lines=["{broken"])

    report = _ingester(conn).ingest_file(path)

    assert report.is_new
    assert report.inserted == 3
    assert report.delta == 3
    assert report.skipped_lines == 1

    messages = get_session_messages(conn, "session-1")
    assert [m.role for m in messages] == ["user", "assistant", "assistant"]
    assert messages[0].timestamp == 1705312800000
    assert messages[0].project == "home/dev/app"  # fallback from directory name
    assert messages[1].text == "Use JWT tokens."
    assert messages[1].tools == ["Read"]
    assert messages[1].timestamp is None
    assert messages[1].parent_uuid == "u1"
    assert messages[1].model == "claude-sonnet"
    assert messages[2].text is None
    assert messages[2].tools == ["Bash"]


def test_ingest_uses_history_metadata(conn, write_transcript):
    path = write_transcript("session-1", conversation("session-1", THREE_TURNS))
    meta = {"session-1": SessionMeta(project="/home/dev/app", display="add pagination")}

    _ingester(conn, meta).ingest_file(path)

    messages = get_session_messages(conn, "session-1")
    assert {m.project for m in messages} == {"/home/dev/app"}
    assert {m.display for m in messages} == {"add pagination"}


def test_unchanged_file_is_skipped(conn, write_transcript):
    path = write_transcript("session-1", conversation("session-1", THREE_TURNS))
    ingester = _ingester(conn)

    assert ingester.ingest_file(path) is not None
    assert ingester.ingest_file(path) is None
    assert count_session_messages(conn, "session-1") == 3


def test_reingest_replaces_messages(conn, write_transcript):
    path = write_transcript("session-1", conversation("session-1", THREE_TURNS))
    ingester = _ingester(conn)
    ingester.ingest_file(path)

    write_transcript(
        "session-1",
        [make_record("assistant", "a9", [{"type": "text", "text": "Done."}], BASE_TS + 9000)],
        append=True,
    )
    report = ingester.ingest_file(path)

    assert not report.is_new
    assert report.previous == 3
    assert report.inserted == 4
    assert report.delta == 1
    assert count_session_messages(conn, "session-1") == 4


def test_failed_ingest_rolls_back_messages_and_fingerprint(conn, write_transcript):
    path = write_transcript("session-1", conversation("session-1", THREE_TURNS))
    ingester = _ingester(conn)
    ingester.ingest_file(path)
    before = ingester.tracker.previous(path)

    write_transcript(
        "session-1",
        [make_record("user", "u9", "one more question", BASE_TS + 9000)],
        append=True,
    )
    with patch.object(
        ingester.tracker, "commit", side_effect=sqlite3.OperationalError("disk I/O error")
    ):
        with pytest.raises(sqlite3.OperationalError):
            ingester.ingest_file(path)

    # Old messages intact, fingerprint unchanged, file still pending
    assert count_session_messages(conn, "session-1") == 3
    assert ingester.tracker.previous(path) == before
    assert ingester.tracker.should_process(path)


def test_sync_is_idempotent(conn, projects_dir, history_path, write_transcript, embedder):
    write_transcript("session-1", conversation("session-1", THREE_TURNS))
    write_transcript("session-2", conversation("session-2", THREE_TURNS), project_dir="-srv-api")

    first = run_sync(conn, projects_dir, history_path, embedder=embedder)
    second = run_sync(conn, projects_dir, history_path, embedder=embedder)

    assert first.new_messages == 6
    assert first.new_sessions == 2
    assert first.embedding.embedded == 2
    assert second.new_messages == 0
    assert second.new_sessions == 0
    assert second.updated_sessions == 0
    assert second.files_unchanged == 2
    assert second.embedding.embedded == 0
    assert second.total_messages == 6
    assert second.total_chunks == 2


def test_sync_after_append_counts_net_new(conn, projects_dir, history_path, write_transcript):
    write_transcript("session-1", conversation("session-1", THREE_TURNS))
    run_sync(conn, projects_dir, history_path)

    write_transcript(
        "session-1",
        [make_record("assistant", "a9", [{"type": "text", "text": "Done."}], BASE_TS + 9000)],
        append=True,
    )
    summary = run_sync(conn, projects_dir, history_path)

    assert summary.new_messages == 1
    assert summary.updated_sessions == 1
    assert summary.new_sessions == 0
    assert count_session_messages(conn, "session-1") == 4


def test_sync_without_embedder_builds_no_chunks(conn, projects_dir, history_path, write_transcript):
    write_transcript("session-1", conversation("session-1", THREE_TURNS))

    summary = run_sync(conn, projects_dir, history_path)

    assert summary.embedding is None
    assert get_chunk(conn, "session-1") is None


def test_sync_reports_malformed_lines(
    conn, projects_dir, history_path, write_transcript, write_history
):
    write_history([{"sessionId": "session-1", "project": "/p"}], raw_lines=["{oops"])
    write_transcript("session-1", conversation("session-1", THREE_TURNS), raw_lines=["nope", "[]"])

    summary = run_sync(conn, projects_dir, history_path)

    assert summary.malformed_lines == 2
    assert summary.history_malformed_lines == 1
    assert {m.project for m in get_session_messages(conn, "session-1")} == {"/p"}


def test_sync_continues_after_file_failure(conn, projects_dir, history_path, write_transcript):
    write_transcript("bad", conversation("bad", THREE_TURNS))
    write_transcript("good", conversation("good", THREE_TURNS))
    def flaky_parse(path):
        if path.stem == "bad":
            raise PermissionError("denied")
        return real_parse(path)

    with patch("cc_logdb.indexer.parse_transcript", side_effect=flaky_parse):
        summary = run_sync(conn, projects_dir, history_path)

    assert summary.files_failed == 1
    assert summary.new_sessions == 1
    assert count_session_messages(conn, "good") == 3
    assert count_session_messages(conn, "bad") == 0


def test_sync_stores_out_of_range_timestamps_as_null(
    conn, projects_dir, history_path, write_transcript
):
    write_transcript(
        "odd",
        [make_record("user", "u1", "first", BASE_TS, session_id="odd")],
        raw_lines=[
            '{"type": "user", "uuid": "u2", "timestamp": Infinity, "message": {"content": "second"}}',
            '{"type": "user", "uuid": "u3", "timestamp": 99999999999999999999999, '
            '"message": {"content": "third"}}',
        ],
    )
    write_transcript("fine", conversation("fine", THREE_TURNS))

    summary = run_sync(conn, projects_dir, history_path)

    assert summary.files_failed == 0
    assert summary.new_messages == 6
    assert [m.timestamp for m in get_session_messages(conn, "odd")] == [BASE_TS, None, None]


@pytest.mark.parametrize("error", [OverflowError("too large"), ValueError("bad value")])
def test_sync_continues_after_value_errors(conn, projects_dir, history_path, write_transcript, error):
    write_transcript("bad", conversation("bad", THREE_TURNS))
    write_transcript("good", conversation("good", THREE_TURNS))

    def flaky_parse(path):
        if path.stem == "bad":
            raise error
        return real_parse(path)

    with patch("cc_logdb.indexer.parse_transcript", side_effect=flaky_parse):
        summary = run_sync(conn, projects_dir, history_path)

    assert summary.files_failed == 1
    assert count_session_messages(conn, "good") == 3
    assert count_session_messages(conn, "bad") == 0

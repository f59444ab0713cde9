"""Tests for reading agent transcripts from the projects directory."""
from __future__ import annotations

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

from claudekeeper.shared.services import transcripts
from claudekeeper.shared.services.transcripts import (
    TranscriptStore,
    extract_content,
    parse_session_file,
)


def _write_transcript(projects_dir: Path, workdir: str, session_id: str, rows: list) -> Path:
    project_dir = projects_dir / workdir.replace("/", "-")
    project_dir.mkdir(parents=True, exist_ok=True)
    path = project_dir / f"{session_id}.jsonl"
    lines = [r if isinstance(r, str) else json.dumps(r) for r in rows]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _session_rows(workdir: str, prompt: str, start: str, end: str) -> list:
    return [
        {"type": "summary", "summary": "x"},
        {
            "type": "user", "cwd": workdir, "uuid": "u1", "timestamp": start,
            "gitBranch": "main", "message": {"role": "user", "content": prompt},
        },
        "{not json",
        {
            "type": "assistant", "uuid": "a1", "timestamp": end,
            "message": {"role": "assistant", "content": [
                {"type": "text", "text": "Sure."},
                {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
            ]},
        },
    ]


def test_parse_session_file_summary() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_transcript(
            Path(tmpdir), "/home/u/repo", "abc",
            _session_rows("/home/u/repo", "Fix " + "x" * 300, "2025-01-01T00:00:00Z", "2025-01-01T00:05:00Z"),
        )
        summary = parse_session_file(path)

    assert summary.id == "abc"
    assert summary.workdir == "/home/u/repo"
    assert len(summary.first_prompt) == 200
    assert summary.message_count == 2
    assert summary.created == "2025-01-01T00:00:00Z"
    assert summary.modified == "2025-01-01T00:05:00Z"
    assert summary.git_branch == "main"


def test_sessions_without_prompt_are_ignored() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_transcript(Path(tmpdir), "/w", "empty", [{"type": "summary", "cwd": "/w"}])
        assert parse_session_file(path) is None


def test_list_all_sorted_by_modified_desc() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        projects = Path(tmpdir)
        _write_transcript(projects, "/a", "old", _session_rows("/a", "one", "2025-01-01T00:00:00Z", "2025-01-01T00:00:01Z"))
        _write_transcript(projects, "/b", "new", _session_rows("/b", "two", "2025-02-01T00:00:00Z", "2025-02-01T00:00:01Z"))
        store = TranscriptStore(projects)

        assert [s.id for s in store.list_all()] == ["new", "old"]
        assert [s.id for s in store.list_for_workdir("/a")] == ["old"]
        assert store.list_for_workdir("/missing") == []
        assert store.known_workdirs() == {"/a", "/b"}
        assert store.get("old").workdir == "/a"
        assert store.get("nope") is None


def test_missing_projects_dir_lists_nothing() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = TranscriptStore(Path(tmpdir) / "absent")
        assert store.list_all() == []
        assert store.read_messages("abc") == []
        assert store.delete("abc") is False


def test_read_messages_filters_internal_content() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        projects = Path(tmpdir)
        rows = _session_rows("/w", "hello", "2025-01-01T00:00:00Z", "2025-01-01T00:01:00Z")
        rows += [
            {"type": "user", "isMeta": True, "uuid": "m1", "message": {"content": "meta"}},
            {"type": "user", "uuid": "c1", "message": {"content": "<command-name>/clear</command-name>"}},
            {"type": "user", "uuid": "r1", "message": {"content": [
                {"type": "tool_result", "tool_use_id": "toolu_1", "content": "file.txt"},
            ]}},
            {"type": "system", "uuid": "s1", "message": {"content": "ignored"}},
        ]
        _write_transcript(projects, "/w", "abc", rows)
        messages = TranscriptStore(projects).read_messages("abc")

    assert [(m.id, m.role) for m in messages] == [("u1", "user"), ("a1", "assistant")]
    assert messages[0].content == "hello"
    assert messages[1].content == [
        {"type": "text", "text": "Sure."},
        {"type": "tool_use", "name": "Bash", "input": {"command": "ls"}},
    ]


def test_extract_content_edge_cases() -> None:
    assert extract_content(None) == ""
    assert extract_content("<local-command-caveat>x</local-command-caveat>") == ""
    assert extract_content([{"type": "tool_result", "content": "x"}]) == ""
    assert extract_content({"unexpected": True}) == ""


def test_delete_removes_transcript() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        projects = Path(tmpdir)
        path = _write_transcript(projects, "/w", "abc", _session_rows("/w", "hi", "t0", "t1"))
        store = TranscriptStore(projects)

        assert store.delete("abc") is True
        assert not path.exists()
        assert store.delete("abc") is False


def test_get_in_workdir_reads_only_that_transcript() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        projects = Path(tmpdir)
        _write_transcript(projects, "/a", "one", _session_rows("/a", "one", "t0", "t1"))
        _write_transcript(projects, "/a", "two", _session_rows("/a", "two", "t0", "t1"))
        _write_transcript(projects, "/b", "three", _session_rows("/b", "three", "t0", "t1"))
        store = TranscriptStore(projects)

        with patch.object(transcripts, "parse_session_file", wraps=parse_session_file) as parse:
            summary = store.get_in_workdir("two", "/a")
            assert store.get_in_workdir("three", "/a") is None

        assert summary.id == "two"
        assert summary.first_prompt == "two"
        parse.assert_called_once_with(projects / "-a" / "two.jsonl")

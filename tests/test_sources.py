"""
Tests for session file discovery.
"""

import pytest

from memex.exceptions import ErrorCode, InvalidArgumentError, NotFoundError
from memex.sources import (
    SessionFile,
    discover_sessions,
    find_session_file,
    is_valid_session_id,
)


class TestIsValidSessionId:
    @pytest.mark.parametrize(
        "value", ["abc", "0f9e8d7c-1234-4abc-9def-001122334455", "agent-a1b2.c3_d4"]
    )
    def test_valid(self, value):
        assert is_valid_session_id(value)

    @pytest.mark.parametrize("value", ["", "../etc/passwd", "a/b", "-leading", None, 42, "x" * 200])
    def test_invalid(self, value):
        assert not is_valid_session_id(value)


class TestDiscoverSessions:
    """Tests for discover_sessions."""

    def test_missing_root_returns_empty(self, tmp_path):
        assert discover_sessions(tmp_path / "nope") == []

    def test_discovers_sessions_and_subagents(self, session_log, source_dir):
        session_log.write("s1", [{"type": "summary", "summary": "x"}])
        session_log.write("s2", [{"type": "summary", "summary": "y"}], project="-home-dev-api")
        subagent = source_dir / "-home-dev-api" / "s2" / "subagents" / "agent-1.jsonl"
        subagent.parent.mkdir(parents=True)
        subagent.write_text("{}\n")
        (source_dir / "-home-dev-api" / "notes.txt").write_text("ignored")

        sessions = discover_sessions(source_dir)

        by_id = {session.id: session for session in sessions}
        assert set(by_id) == {"s1", "s2", "agent-1"}
        assert by_id["agent-1"].is_subagent
        assert by_id["agent-1"].encoded_project == "-home-dev-api"
        assert by_id["s1"].encoded_project == "-home-dev-webapp"

    def test_project_filter(self, session_log, source_dir):
        session_log.write("s1", ["{}"])
        session_log.write("s2", ["{}"], project="-home-dev-api")

        sessions = discover_sessions(source_dir, project_filter="API")

        assert [session.id for session in sessions] == ["s2"]

    def test_fingerprint_reflects_size(self, session_log):
        path = session_log.write("s1", ['{"a": 1}'])

        source = SessionFile.from_path(path)

        assert source.fingerprint.size == path.stat().st_size
        assert source.fingerprint.mtime_ns == path.stat().st_mtime_ns


class TestFindSessionFile:
    def test_finds_by_id(self, session_log, source_dir):
        path = session_log.write("abc-123", ["{}"])

        assert find_session_file(source_dir, "abc-123").path == path

    def test_malformed_id(self, source_dir):
        with pytest.raises(InvalidArgumentError) as exc_info:
            find_session_file(source_dir, "../../secret")

        assert exc_info.value.code == ErrorCode.INVALID_SESSION_ID

    def test_unknown_id(self, source_dir):
        with pytest.raises(NotFoundError) as exc_info:
            find_session_file(source_dir, "does-not-exist")

        assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND

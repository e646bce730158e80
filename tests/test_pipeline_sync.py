"""
Tests for incremental sync.
"""

import pytest
from sqlalchemy import text

from memex.db.repositories import (
    ExtractionStateRepository,
    LinkRepository,
    ToolUseRepository,
)
from memex.exceptions import ErrorCode, InvalidArgumentError, NotFoundError
from memex.models.db import ChatSession, ExtractionStatus, Message
from memex.pipeline import extraction
from memex.pipeline.sync import SyncResult, SyncService, needs_extraction, sync
from memex.sources import Fingerprint, SessionFile


def _count(store, model):
    with store.session() as db:
        return db.query(model).count()


def _fts_count(store):
    with store.session() as db:
        return db.execute(text("SELECT count(*) FROM messages_fts_docsize")).scalar()


def _state(store, path):
    with store.session() as db:
        state = ExtractionStateRepository(db).get_by_path(str(path))
        return None if state is None else (state.status, state.file_size, state.error_message)


@pytest.fixture
def two_sessions(session_log):
    first = session_log.write(
        "s1",
        [
            session_log.user("u1", "set up auth", "2025-01-01T10:00:00.000Z"),
            session_log.assistant("a1", "Adding OAuth login", "2025-01-01T10:00:05.000Z", parent="u1"),
        ],
    )
    second = session_log.write(
        "s2",
        [session_log.user("u2", "fix the billing report", "2025-01-02T09:00:00.000Z", session_id="s2")],
        project="-home-dev-api",
    )
    return first, second


class TestNeedsExtraction:
    """Tests for the skip decision."""

    def test_no_state(self):
        assert needs_extraction(None, Fingerprint(1, 1))

    def test_complete_matching_fingerprint_skipped(self, store):
        with store.session() as db:
            repo = ExtractionStateRepository(db)
            state = repo.mark_in_progress("/x.jsonl", "x")
            repo.mark_complete(state, messages_extracted=0, file_size=10, file_mtime_ns=5)

            assert not needs_extraction(state, Fingerprint(10, 5))
            assert needs_extraction(state, Fingerprint(11, 5))
            assert needs_extraction(state, Fingerprint(10, 6))
            assert needs_extraction(state, Fingerprint(10, 5), force=True)

    def test_interrupted_state_needs_extraction(self, store):
        with store.session() as db:
            state = ExtractionStateRepository(db).mark_in_progress("/x.jsonl", "x")

            assert needs_extraction(state, Fingerprint(10, 5))


class TestSync:
    """Tests for SyncService.sync."""

    def test_sync_all(self, store, two_sessions):
        result = SyncService(store).sync()

        assert result.success
        assert result.sessions_discovered == 2
        assert result.files_processed == 2
        assert result.messages_extracted == 3
        assert result.messages_inserted == 3
        assert _count(store, ChatSession) == 2
        assert _fts_count(store) == 3
        for path in two_sessions:
            assert _state(store, path)[0] == ExtractionStatus.COMPLETE.value

    def test_second_sync_is_a_no_op(self, store, two_sessions):
        service = SyncService(store)
        service.sync()

        result = service.sync()

        assert result.files_processed == 0
        assert result.sessions_skipped == 2
        assert _count(store, Message) == 3
        assert _fts_count(store) == 3

    def test_changed_file_re_extracted(self, store, session_log, two_sessions):
        service = SyncService(store)
        service.sync()
        session_log.append(
            two_sessions[0],
            [session_log.user("u3", "and add logout", "2025-01-01T10:05:00.000Z", parent="a1")],
        )

        result = service.sync()

        assert result.files_processed == 1
        assert result.sessions_skipped == 1
        assert result.messages_extracted == 3
        assert result.messages_inserted == 1
        assert _count(store, Message) == 4
        with store.session() as db:
            assert db.get(ChatSession, "s1").message_count == 3

    def test_fingerprint_taken_when_file_is_synced(self, store, session_log, two_sessions):
        """Test growth between discovery and extraction is recorded, not missed."""
        source = SessionFile.from_path(two_sessions[0])
        session_log.append(
            two_sessions[0],
            [session_log.user("u3", "and add logout", "2025-01-01T10:05:00.000Z", parent="a1")],
        )

        assert SyncService(store).sync_file(source)

        assert _state(store, two_sessions[0])[1] == two_sessions[0].stat().st_size
        assert SyncService(store).sync("s1").sessions_skipped == 1

    def test_force_re_extracts_without_duplicates(self, store, two_sessions):
        service = SyncService(store)
        service.sync()

        result = service.sync(force=True)

        assert result.files_processed == 2
        assert result.messages_inserted == 0
        assert _count(store, Message) == 3
        assert _fts_count(store) == 3

    def test_malformed_lines_skipped(self, store, session_log):
        path = session_log.write(
            "s1",
            [session_log.user("u1", "valid line"), "{oops", session_log.assistant("a1", "still read")],
        )

        result = SyncService(store).sync()

        assert result.success
        assert result.malformed_lines == 1
        assert result.messages_extracted == 2
        assert _state(store, path)[0] == ExtractionStatus.COMPLETE.value

    def test_deeply_nested_line_is_malformed(self, store, session_log, two_sessions):
        """Test a line too deep for the JSON decoder is skipped, not fatal."""
        session_log.append(two_sessions[0], ["[" * 200_000])

        result = SyncService(store).sync()

        assert result.success
        assert result.files_processed == 2
        assert result.malformed_lines == 1
        assert _count(store, Message) == 3

    def test_file_without_messages_creates_no_session(self, store, session_log):
        path = session_log.write("s1", [{"type": "progress"}, {"type": "file-history-snapshot"}])

        result = SyncService(store).sync()

        assert result.files_processed == 1
        assert _count(store, ChatSession) == 0
        assert _state(store, path)[0] == ExtractionStatus.COMPLETE.value

    def test_tool_uses_and_results(self, store, session_log):
        session_log.write(
            "s1",
            [
                session_log.assistant(
                    "a1",
                    "Reading",
                    tools=[session_log.tool("t1", "Read", file_path="/src/app.py")],
                ),
                session_log.user(
                    "u1",
                    [{"type": "tool_result", "tool_use_id": "t1", "content": "file body"}],
                    "2025-01-01T10:00:06.000Z",
                ),
            ],
        )

        result = SyncService(store).sync()

        assert result.tool_uses_inserted == 1
        with store.session() as db:
            tool_use = ToolUseRepository(db).get("t1")
            assert tool_use.status == "success"
            assert tool_use.result == "file body"
            assert tool_use.input == {"file_path": "/src/app.py"}

    def test_progress_callback(self, store, two_sessions):
        updates = []
        service = SyncService(store)

        service.sync(on_progress=updates.append)
        service.sync(on_progress=updates.append)

        assert [u.phase for u in updates] == ["complete", "complete", "skipped", "skipped"]
        assert updates[0].total == 2

    def test_module_level_sync(self, store, two_sessions):
        result = sync(store, "all")

        assert isinstance(result, SyncResult)
        assert result.files_processed == 2


class TestSyncTargets:
    """Tests for session id and path targets."""

    def test_sync_one_session(self, store, two_sessions):
        result = SyncService(store).sync("s2")

        assert result.files_processed == 1
        assert _count(store, ChatSession) == 1

    def test_unknown_session(self, store, two_sessions):
        with pytest.raises(NotFoundError) as exc_info:
            SyncService(store).sync("nope")

        assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND

    def test_invalid_session_id(self, store):
        with pytest.raises(InvalidArgumentError) as exc_info:
            SyncService(store).sync("../etc")

        assert exc_info.value.code == ErrorCode.INVALID_SESSION_ID

    def test_explicit_paths(self, store, two_sessions, tmp_path):
        missing = tmp_path / "gone.jsonl"

        result = SyncService(store).sync([two_sessions[0], missing])

        assert result.files_processed == 1
        assert not result.success
        assert result.errors[0].code == ErrorCode.SOURCE_INACCESSIBLE.value
        assert result.errors[0].session_path == str(missing)

    def test_project_filter(self, store, two_sessions):
        result = SyncService(store).sync("all", project_filter="api")

        assert result.sessions_discovered == 1


class TestCrashRecovery:
    """A failure mid-file leaves nothing behind and is retried."""

    def test_failure_rolls_back_and_marks_failed(self, store, two_sessions, monkeypatch):
        def fail(self, *args, **kwargs):
            raise RuntimeError("disk went away")

        monkeypatch.setattr(SyncService, "_mark_complete", fail)

        result = SyncService(store).sync("s1")

        assert not result.success
        assert result.errors[0].code == ErrorCode.SYNC_FAILED.value
        assert _count(store, Message) == 0
        assert _fts_count(store) == 0
        status, size, error = _state(store, two_sessions[0])
        assert status == ExtractionStatus.FAILED.value
        assert size is None
        assert "disk went away" in error

    def test_parse_failure_does_not_stop_other_files(self, store, two_sessions, monkeypatch):
        real_extract = extraction.extract_session

        def extract(source):
            if source.id == "s1":
                raise RecursionError("maximum recursion depth exceeded")
            return real_extract(source)

        monkeypatch.setattr("memex.pipeline.sync.extract_session", extract)

        result = SyncService(store).sync()

        assert not result.success
        assert result.files_processed == 1
        assert [e.code for e in result.errors] == [ErrorCode.SYNC_FAILED.value]
        assert _state(store, two_sessions[0])[0] == ExtractionStatus.FAILED.value
        assert _state(store, two_sessions[1])[0] == ExtractionStatus.COMPLETE.value

    def test_retry_after_failure(self, store, two_sessions, monkeypatch):
        def fail(self, *args, **kwargs):
            raise RuntimeError("crash")

        with monkeypatch.context() as patch:
            patch.setattr(SyncService, "_mark_complete", fail)
            SyncService(store).sync("s1")

        result = SyncService(store).sync("s1")

        assert result.success
        assert result.files_processed == 1
        assert _count(store, Message) == 2
        assert _state(store, two_sessions[0])[0] == ExtractionStatus.COMPLETE.value

    def test_interrupted_state_is_resumed(self, store, two_sessions):
        with store.session() as db:
            ExtractionStateRepository(db).mark_in_progress(str(two_sessions[0]), "s1")

        result = SyncService(store).sync()

        assert result.files_processed == 2
        assert _state(store, two_sessions[0])[0] == ExtractionStatus.COMPLETE.value


class TestRelationshipExtraction:
    """Links written during sync."""

    def test_project_topic_and_shared_files(self, store, session_log):
        tools = [session_log.tool("t-a", "Edit", file_path="/src/auth.py")]
        session_log.write("a-first", [session_log.assistant("m-a", "edit auth", tools=tools)])
        tools = [session_log.tool("t-b", "Read", file_path="/src/auth.py")]
        session_log.write("b-second", [session_log.assistant("m-b", "read auth", tools=tools)])

        SyncService(store).sync()

        with store.session() as db:
            links = LinkRepository(db)
            related = links.find_by_source("session", "b-second", relationship="related_to")
            assert [(l.target_id, l.weight) for l in related] == [("a-first", 1.0)]
            assert len(links.find_by_source("session", "a-first", relationship="mentions")) == 1

    def test_continuation_link(self, store, session_log):
        session_log.write("a-first", [session_log.user("m-1", "start the migration")])
        session_log.write(
            "b-second",
            [
                session_log.summary("Migration work", leaf_uuid="m-1"),
                session_log.user("m-2", "continue the migration", "2025-01-02T10:00:00.000Z"),
            ],
        )

        SyncService(store).sync()

        with store.session() as db:
            continues = LinkRepository(db).find_by_source(
                "session", "b-second", relationship="continues"
            )
            assert [l.target_id for l in continues] == ["a-first"]

"""
Tests for JSON backup and restore.
"""

import json

import pytest

from memex.db import connect
from memex.db.repositories import BaseRepository
from memex.exceptions import ErrorCode, InvalidArgumentError, InvalidExportError
from memex.models.db import ChatSession, Link, Message
from memex.pipeline.sync import SyncService
from memex.search import SearchService
from memex.services.export import (
    EXPORT_FORMAT_VERSION,
    ExportService,
    validate_export,
    validate_export_file,
)
from memex.services.stats import StatsService


@pytest.fixture
def synced(store, session_log):
    session_log.write(
        "s1",
        [
            session_log.summary("Auth refactor"),
            session_log.user("u1", "set up auth", "2025-01-01T10:00:00.000Z"),
            session_log.assistant(
                "a1",
                "Reading the auth module",
                "2025-01-01T10:00:05.000Z",
                parent="u1",
                tools=[session_log.tool("t1", "Read", file_path="/src/auth.py")],
            ),
        ],
    )
    session_log.write(
        "s2",
        [
            session_log.user(
                "v1", "fix the billing bug", "2025-02-01T09:00:00.000Z", session_id="s2"
            ),
            session_log.assistant(
                "w1",
                "Editing auth and billing",
                "2025-02-01T09:00:10.000Z",
                session_id="s2",
                tools=[session_log.tool("t2", "Edit", file_path="/src/auth.py")],
            ),
        ],
    )
    SyncService(store).sync()
    return store


@pytest.fixture
def restored(tmp_path):
    """An empty second store to import into."""
    db = connect(tmp_path / "restore" / "memory.db")
    yield db
    db.close()


@pytest.fixture
def backup(synced, tmp_path):
    path = tmp_path / "backup.json"
    ExportService(synced).export_to_json(path)
    return path


def _dump(store, model, drop=()):
    with store.session() as db:
        rows = BaseRepository(model, db).dump()
    return [{k: v for k, v in row.items() if k not in drop} for row in rows]


def _minimal_export(**overrides):
    document = {
        "version": EXPORT_FORMAT_VERSION,
        "exported_at": "2025-03-01T00:00:00.000Z",
        "stats": {},
        "sessions": [],
        "messages": [],
        "tool_uses": [],
        "topics": [],
        "entities": [],
        "links": [],
    }
    document.update(overrides)
    return document


class TestValidateExport:
    """Tests for export file validation."""

    def test_minimal_document_is_valid(self):
        """Test sections added after the first format version are optional."""
        manifest = validate_export(_minimal_export())

        assert manifest.version == EXPORT_FORMAT_VERSION
        assert manifest.exported_at == "2025-03-01T00:00:00.000Z"

    @pytest.mark.parametrize(
        "document, message",
        [
            ([], "JSON object"),
            (_minimal_export(version=None), "version"),
            (_minimal_export(version="2.0"), "Unsupported export version"),
            (_minimal_export(stats=[]), "stats"),
            (_minimal_export(messages={}), "messages array"),
            (_minimal_export(links=["not a row"]), "links entry at index 0"),
            (_minimal_export(extraction_state="x"), "extraction_state array"),
        ],
    )
    def test_rejects_malformed_document(self, document, message):
        with pytest.raises(InvalidExportError, match=message) as exc_info:
            validate_export(document)

        assert exc_info.value.code == ErrorCode.INVALID_EXPORT

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidExportError, match="does not exist"):
            validate_export_file(tmp_path / "missing.json")

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text('{"version": "1.0", ', encoding="utf-8")

        with pytest.raises(InvalidExportError, match="Failed to parse"):
            validate_export_file(path)


class TestExport:
    """Tests for ExportService.export_to_json."""

    def test_writes_every_table(self, synced, tmp_path):
        path = tmp_path / "backup.json"

        result = ExportService(synced).export_to_json(path)

        document = json.loads(path.read_text(encoding="utf-8"))
        assert document["version"] == EXPORT_FORMAT_VERSION
        assert document["stats"] == result.counts
        assert result.counts["sessions"] == 2
        assert result.counts["messages"] == 4
        assert result.counts["tool_uses"] == 2
        assert result.counts["extraction_state"] == 2
        assert result.bytes == path.stat().st_size
        assert {row["id"] for row in document["messages"]} == {"u1", "a1", "v1", "w1"}

    def test_empty_store(self, store, tmp_path):
        result = ExportService(store).export_to_json(tmp_path / "empty.json")

        assert set(result.counts.values()) == {0}

    def test_missing_directory(self, store, tmp_path):
        with pytest.raises(InvalidArgumentError, match="Directory does not exist"):
            ExportService(store).export_to_json(tmp_path / "nope" / "backup.json")


class TestImport:
    """Tests for ExportService.import_from_json."""

    def test_round_trip_into_fresh_store(self, synced, backup, restored):
        result = ExportService(restored).import_from_json(backup)

        assert result.inserted == result.read
        assert StatsService(restored).stats().message_count == 4
        assert _dump(restored, ChatSession) == _dump(synced, ChatSession)
        assert _dump(restored, Message, drop={"seq"}) == _dump(synced, Message, drop={"seq"})
        assert _dump(restored, Link, drop={"id"}) == _dump(synced, Link, drop={"id"})
        assert restored.integrity_check().ok

    def test_imported_messages_are_searchable(self, backup, restored):
        ExportService(restored).import_from_json(backup)

        response = SearchService(restored).search("billing")
        sessions = SearchService(restored).search_sessions("refactor")

        assert {r.message_id for r in response.results} == {"v1", "w1"}
        assert [s.session_id for s in sessions] == ["s1"]

    def test_extraction_state_makes_next_sync_skip(self, backup, restored):
        """Test restored fingerprints match the unchanged transcripts."""
        ExportService(restored).import_from_json(backup)

        result = SyncService(restored).sync()

        assert result.sessions_skipped == 2
        assert result.files_processed == 0

    def test_import_twice_changes_nothing(self, backup, restored):
        service = ExportService(restored)
        service.import_from_json(backup)

        second = service.import_from_json(backup, force=True)

        assert set(second.inserted.values()) == {0}
        assert StatsService(restored).stats().message_count == 4

    def test_refuses_to_merge_without_flag(self, synced, backup):
        with pytest.raises(InvalidArgumentError, match="--force") as exc_info:
            ExportService(synced).import_from_json(backup)

        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT

    def test_clear_replaces_existing_data(self, synced, backup, session_log):
        session_log.write(
            "s3", [session_log.user("x1", "kubernetes rollout", session_id="s3")]
        )
        SyncService(synced).sync()

        result = ExportService(synced).import_from_json(backup, clear=True)

        assert result.cleared is True
        assert StatsService(synced).stats().session_count == 2
        assert SearchService(synced).search("kubernetes").results == []
        assert synced.integrity_check().ok

    def test_constraint_violation_rolls_back(self, tmp_path, restored):
        """Test a message whose session is absent aborts the whole import."""
        path = tmp_path / "orphan.json"
        document = _minimal_export(
            sessions=[
                {
                    "id": "s1",
                    "project_path_encoded": "-home-dev-webapp",
                    "project_path_decoded": "/home/dev/webapp",
                    "project_name": "webapp",
                    "start_time": "2025-01-01T10:00:00.000Z",
                    "message_count": 1,
                }
            ],
            messages=[
                {
                    "id": "m1",
                    "session_id": "missing",
                    "role": "user",
                    "content": "orphan",
                    "timestamp": "2025-01-01T10:00:00.000Z",
                }
            ],
        )
        path.write_text(json.dumps(document), encoding="utf-8")

        with pytest.raises(InvalidExportError, match="Invalid messages rows"):
            ExportService(restored).import_from_json(path)

        assert StatsService(restored).stats().session_count == 0

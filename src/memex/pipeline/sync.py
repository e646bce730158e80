"""
Incremental sync orchestrator.

Composes the streaming reader, classifier, repositories and extraction
state into one all-or-nothing unit per source file:

1. Compare the file's live (size, mtime) fingerprint with the stored state.
   Unchanged, complete files are skipped unless ``force`` is set.
2. Parse the whole file in memory (no transaction open).
3. In one transaction: mark state ``in_progress``, write the session,
   messages and tool activity, extract entities, confirm the full-text
   triggers are installed, and mark state ``complete`` with the fingerprint
   taken before parsing.
4. On failure the transaction rolls back and ``failed`` is recorded in a
   separate transaction. Other files are still attempted.

Because every write is idempotent on identifiers, an interrupted file is
simply extracted again from line one on the next run.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

from sqlalchemy import text
from sqlalchemy.orm import Session

from memex.config import Settings, settings as default_settings
from memex.db.connection import Store
from memex.db.repositories import (
    ExtractionStateRepository,
    MessageRepository,
    SessionRepository,
    ToolUseRepository,
)
from memex.exceptions import ErrorCode, MemexError, SyncError
from memex.models.db import ExtractionState, ExtractionStatus
from memex.models.parsed import ExtractedSession
from memex.parsers.utils import to_iso
from memex.pipeline.entities import extract_entities
from memex.pipeline.extraction import extract_session
from memex.sources import (
    SYNC_ALL,
    Fingerprint,
    SessionFile,
    discover_sessions,
    find_session_file,
)

logger = logging.getLogger(__name__)

# Run a passive WAL checkpoint after this many files within one sync
PASSIVE_CHECKPOINT_INTERVAL = 50

FTS_TRIGGERS = ("messages_fts_ai", "messages_fts_ad", "messages_fts_au")

SyncTarget = Union[str, Sequence[Union[str, Path]]]


@dataclass
class SyncFileError:
    """A file whose extraction failed."""

    session_path: str
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"session_path": self.session_path, "code": self.code, "message": self.message}


@dataclass
class SyncProgress:
    """Progress report passed to ``on_progress`` callbacks."""

    current: int
    total: int
    session_path: str
    phase: str  # extracting | skipped | complete | failed


@dataclass
class SyncResult:
    """Summary of one sync invocation."""

    success: bool = True
    sessions_discovered: int = 0
    files_processed: int = 0
    sessions_skipped: int = 0
    messages_extracted: int = 0
    messages_inserted: int = 0
    tool_uses_inserted: int = 0
    malformed_lines: int = 0
    unclassified_records: int = 0
    errors: list[SyncFileError] = field(default_factory=list)
    duration_ms: float = 0.0

    def add_error(self, session_path: str, error: MemexError) -> None:
        self.errors.append(
            SyncFileError(session_path=session_path, code=error.code.value, message=error.message)
        )
        self.success = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "sessions_discovered": self.sessions_discovered,
            "files_processed": self.files_processed,
            "sessions_skipped": self.sessions_skipped,
            "messages_extracted": self.messages_extracted,
            "messages_inserted": self.messages_inserted,
            "tool_uses_inserted": self.tool_uses_inserted,
            "malformed_lines": self.malformed_lines,
            "unclassified_records": self.unclassified_records,
            "errors": [error.to_dict() for error in self.errors],
            "duration_ms": round(self.duration_ms, 1),
        }


def needs_extraction(
    state: Optional[ExtractionState], fingerprint: Fingerprint, force: bool = False
) -> bool:
    """
    Decide whether a file must be (re-)extracted.

    A file is up to date only if its state is ``complete`` and the stored
    fingerprint matches the live one exactly.
    """
    if force or state is None:
        return True
    if state.status != ExtractionStatus.COMPLETE.value:
        return True
    if state.file_size is None or state.file_mtime_ns is None:
        return True
    return state.file_size != fingerprint.size or state.file_mtime_ns != fingerprint.mtime_ns


class SyncService:
    """
    Sync session files into a :class:`Store`.

    Example:
        >>> service = SyncService(store)
        >>> result = service.sync("all")
        >>> result.files_processed
        3
    """

    def __init__(self, store: Store, config: Optional[Settings] = None):
        self.store = store
        self.config = config or default_settings

    def resolve_target(
        self, target: SyncTarget, project_filter: Optional[str] = None
    ) -> tuple[list[SessionFile], list[tuple[str, MemexError]]]:
        """
        Turn a sync target into session files.

        Args:
            target: ``"all"``, a session id, or a sequence of file paths

        Returns:
            (session files, per-path errors for explicit paths that could not be read)

        Raises:
            MemexError: For a malformed or unknown session id, or an unreadable source root
        """
        if isinstance(target, str):
            if target == SYNC_ALL:
                return discover_sessions(self.config.source_directory, project_filter), []
            return [find_session_file(self.config.source_directory, target)], []

        files: list[SessionFile] = []
        failures: list[tuple[str, MemexError]] = []
        for raw_path in target:
            path = Path(raw_path).expanduser()
            try:
                files.append(SessionFile.from_path(path))
            except MemexError as e:
                failures.append((str(path), e))
        return files, failures

    def sync(
        self,
        target: SyncTarget = SYNC_ALL,
        force: bool = False,
        project_filter: Optional[str] = None,
        on_progress: Optional[Callable[[SyncProgress], None]] = None,
    ) -> SyncResult:
        """
        Synchronize session files into the store.

        Args:
            target: ``"all"``, a session id, or a sequence of file paths
            force: Re-extract even when fingerprints match
            project_filter: Substring filter on project directory (``"all"`` only)
            on_progress: Optional callback invoked per file

        Returns:
            SyncResult; per-file failures are listed in ``errors``
        """
        started = time.monotonic()
        result = SyncResult()

        files, failures = self.resolve_target(target, project_filter)
        for path, error in failures:
            result.add_error(path, error)

        result.sessions_discovered = len(files)
        logger.info(f"Sync started: {len(files)} session file(s), force={force}")

        for index, source in enumerate(files, start=1):
            path = str(source.path)
            try:
                processed = self.sync_file(source, force=force, result=result)
            except MemexError as e:
                logger.error(f"Sync failed for {path}: {e}")
                result.add_error(path, e)
                self._record_failure(source, e)
                phase = "failed"
            else:
                phase = "complete" if processed else "skipped"

            if on_progress is not None:
                on_progress(SyncProgress(index, len(files), path, phase))

            if result.files_processed and index % PASSIVE_CHECKPOINT_INTERVAL == 0:
                self.store.checkpoint("PASSIVE", best_effort=True)

        if result.files_processed:
            self.store.optimize()
            self.store.checkpoint("TRUNCATE", best_effort=True)

        result.duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Sync finished: processed={result.files_processed} "
            f"skipped={result.sessions_skipped} messages={result.messages_extracted} "
            f"errors={len(result.errors)} in {result.duration_ms:.0f}ms"
        )
        return result

    def sync_file(
        self, source: SessionFile, force: bool = False, result: Optional[SyncResult] = None
    ) -> bool:
        """
        Extract one session file if it needs it.

        Returns:
            True if the file was extracted, False if skipped as up to date

        Raises:
            MemexError: If extraction failed; nothing from this attempt is kept
        """
        result = result if result is not None else SyncResult()
        # Fingerprint as of just before parsing, not as of discovery
        fingerprint = source.current_fingerprint()

        with self.store.session() as db:
            state = ExtractionStateRepository(db).get_by_path(str(source.path))
            if not needs_extraction(state, fingerprint, force):
                result.sessions_skipped += 1
                logger.debug(f"Skipping unchanged session file {source.path}")
                return False

        try:
            extracted = extract_session(source)
            with self.store.session() as db:
                inserted_messages, inserted_tools = self._write(db, source, extracted, fingerprint)
        except MemexError:
            raise
        except Exception as e:
            raise SyncError(
                f"Extraction failed: {e}",
                context={"session_path": str(source.path)},
            ) from e

        result.files_processed += 1
        result.messages_extracted += len(extracted.messages)
        result.messages_inserted += inserted_messages
        result.tool_uses_inserted += inserted_tools
        result.malformed_lines += extracted.malformed_lines
        result.unclassified_records += extracted.unclassified_records

        logger.info(
            f"Extracted {source.path}: {len(extracted.messages)} message(s), "
            f"{inserted_messages} new, {extracted.malformed_lines} malformed line(s)"
        )
        return True

    def _write(
        self,
        db: Session,
        source: SessionFile,
        extracted: ExtractedSession,
        fingerprint: Fingerprint,
    ) -> tuple[int, int]:
        state_repo = ExtractionStateRepository(db)
        state = state_repo.mark_in_progress(
            str(source.path), extracted.session_id, extracted.format_version
        )

        inserted_messages = 0
        inserted_tools = 0
        if extracted.messages or extracted.summary:
            session_repo = SessionRepository(db)
            session_repo.upsert(
                extracted.session_id,
                project_path_encoded=extracted.project_path_encoded,
                project_path_decoded=extracted.project_path_decoded,
                project_name=extracted.project_name,
                start_time=to_iso(extracted.start_time) if extracted.start_time else None,
                end_time=to_iso(extracted.end_time) if extracted.end_time else None,
                summary=extracted.summary,
                format_version=extracted.format_version,
            )

            inserted_messages = MessageRepository(db).insert_many(
                extracted.session_id, extracted.messages
            )

            tool_repo = ToolUseRepository(db)
            inserted_tools = tool_repo.insert_many(
                extracted.session_id,
                extracted.tool_invocations,
                default_timestamp=to_iso(extracted.start_time),
            )
            tool_repo.apply_results(extracted.tool_results)

            session_repo.refresh_message_count(extracted.session_id)
            extract_entities(db, extracted)

        self._confirm_index(db)
        self._mark_complete(state_repo, state, len(extracted.messages), fingerprint)
        return inserted_messages, inserted_tools

    def _confirm_index(self, db: Session) -> None:
        """Fail the file if the full-text triggers are missing."""
        placeholders = ", ".join(f"'{name}'" for name in FTS_TRIGGERS)
        installed = db.execute(
            text(
                "SELECT count(*) FROM sqlite_master "
                f"WHERE type = 'trigger' AND name IN ({placeholders})"
            )
        ).scalar()
        if installed != len(FTS_TRIGGERS):
            raise SyncError(
                "Full-text index triggers are missing; run `memex check --repair`",
                code=ErrorCode.DB_CORRUPTED,
            )

    def _mark_complete(
        self,
        state_repo: ExtractionStateRepository,
        state: ExtractionState,
        messages_extracted: int,
        fingerprint: Fingerprint,
    ) -> None:
        state_repo.mark_complete(
            state,
            messages_extracted=messages_extracted,
            file_size=fingerprint.size,
            file_mtime_ns=fingerprint.mtime_ns,
        )

    def _record_failure(self, source: SessionFile, error: MemexError) -> None:
        try:
            with self.store.session() as db:
                ExtractionStateRepository(db).mark_failed(
                    str(source.path), source.id, f"[{error.code.value}] {error.message}"
                )
        except MemexError as e:
            logger.warning(f"Could not record failure for {source.path}: {e}")


def sync(
    store: Store,
    target: SyncTarget = SYNC_ALL,
    force: bool = False,
    config: Optional[Settings] = None,
    **kwargs: Any,
) -> SyncResult:
    """Convenience wrapper around :meth:`SyncService.sync`."""
    return SyncService(store, config=config).sync(target, force=force, **kwargs)


__all__ = [
    "SYNC_ALL",
    "SyncFileError",
    "SyncProgress",
    "SyncResult",
    "SyncService",
    "needs_extraction",
    "sync",
]

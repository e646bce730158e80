"""
Crash recovery.

A file whose state is missing, ``in_progress`` (interrupted) or ``failed``
is pending. Recovery re-runs extraction for those files only.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from memex.config import Settings, settings as default_settings
from memex.db.connection import Store
from memex.db.repositories import ExtractionStateRepository
from memex.models.db import ExtractionStatus
from memex.pipeline.sync import SyncResult, SyncService
from memex.sources import SessionFile, discover_sessions

logger = logging.getLogger(__name__)


@dataclass
class PendingSession:
    source: SessionFile
    status: str  # pending | in_progress | failed


@dataclass
class RecoveryResult:
    pending: list[PendingSession] = field(default_factory=list)
    dry_run: bool = False
    sync_result: Optional[SyncResult] = None

    @property
    def recovered(self) -> int:
        return self.sync_result.files_processed if self.sync_result else 0


def find_pending(store: Store, files: list[SessionFile]) -> list[PendingSession]:
    """
    Files that have never completed extraction.

    Completed files whose fingerprint changed are not pending here; the
    regular sync handles those.
    """
    pending = []
    with store.session() as db:
        repo = ExtractionStateRepository(db)
        for source in files:
            state = repo.get_by_path(str(source.path))
            if state is None:
                pending.append(PendingSession(source, ExtractionStatus.PENDING.value))
            elif state.status != ExtractionStatus.COMPLETE.value:
                pending.append(PendingSession(source, state.status))
    return pending


def recover(
    store: Store,
    root: Optional[Path] = None,
    dry_run: bool = False,
    max_sessions: Optional[int] = None,
    config: Optional[Settings] = None,
) -> RecoveryResult:
    """
    Re-extract pending and interrupted session files.

    Args:
        store: Target store
        root: Transcript root; defaults to the configured source directory
        dry_run: Only report what would be recovered
        max_sessions: Cap on files recovered in this run

    Returns:
        RecoveryResult listing pending files and, unless dry run, the sync outcome
    """
    config = config or default_settings
    files = discover_sessions(root or config.source_directory)
    pending = find_pending(store, files)
    if max_sessions is not None:
        pending = pending[:max_sessions]

    result = RecoveryResult(pending=pending, dry_run=dry_run)
    if dry_run or not pending:
        logger.info(f"Recovery: {len(pending)} pending session file(s), dry_run={dry_run}")
        return result

    logger.info(f"Recovering {len(pending)} session file(s)")
    result.sync_result = SyncService(store, config=config).sync(
        [item.source.path for item in pending], force=True
    )
    return result


def recover_interrupted(
    store: Store,
    root: Optional[Path] = None,
    config: Optional[Settings] = None,
) -> Optional[RecoveryResult]:
    """
    Startup pass: re-extract files a previous run left ``in_progress`` or ``failed``.

    Files that were never synced are left to the next full sync.

    Returns:
        RecoveryResult, or None when ``recovery_on_startup`` is disabled
    """
    config = config or default_settings
    if not config.recovery_on_startup:
        return None

    files = discover_sessions(root or config.source_directory)
    interrupted = [
        item
        for item in find_pending(store, files)
        if item.status != ExtractionStatus.PENDING.value
    ]
    result = RecoveryResult(pending=interrupted)
    if not interrupted:
        return result

    logger.info(f"Resuming {len(interrupted)} interrupted session file(s)")
    result.sync_result = SyncService(store, config=config).sync(
        [item.source.path for item in interrupted], force=True
    )
    for error in result.sync_result.errors:
        logger.warning(f"Recovery failed for {error.session_path}: {error.message}")
    return result

"""
Filesystem session source.

The assistant writes one JSONL transcript per session under
``<root>/<encoded-project>/<session-id>.jsonl``; subagent transcripts live
in ``<session-id>/subagents/*.jsonl``. The encoded project directory name is
treated as opaque. Readable project paths come from the log content.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from memex.exceptions import (
    ErrorCode,
    InvalidArgumentError,
    NotFoundError,
    SourceInaccessibleError,
)

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

# Sync target meaning every discovered session; never a session id
SYNC_ALL = "all"


@dataclass(frozen=True)
class Fingerprint:
    """(size, modification time) of a source file."""

    size: int
    mtime_ns: int


@dataclass
class SessionFile:
    """A discovered session transcript."""

    id: str
    path: Path
    encoded_project: str
    size: int
    mtime_ns: int
    is_subagent: bool = False

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(size=self.size, mtime_ns=self.mtime_ns)

    @classmethod
    def from_path(cls, path: Path, encoded_project: Optional[str] = None) -> "SessionFile":
        """
        Build a SessionFile for an arbitrary path.

        Raises:
            SourceInaccessibleError: If the file cannot be stat'ed
        """
        try:
            stat = path.stat()
        except OSError as e:
            raise SourceInaccessibleError(
                f"Cannot read session file: {e.strerror or e}",
                context={"path": str(path)},
            ) from e

        is_subagent = path.parent.name == "subagents"
        if encoded_project is None:
            # <project>/<session>/subagents/<agent>.jsonl or <project>/<session>.jsonl
            project_dir = path.parent.parent.parent if is_subagent else path.parent
            encoded_project = project_dir.name

        return cls(
            id=path.stem,
            path=path,
            encoded_project=encoded_project,
            size=stat.st_size,
            mtime_ns=stat.st_mtime_ns,
            is_subagent=is_subagent,
        )

    def current_fingerprint(self) -> Fingerprint:
        """Re-stat the file and return its live fingerprint."""
        return SessionFile.from_path(self.path, self.encoded_project).fingerprint


def is_valid_session_id(value: object) -> bool:
    """True for identifiers safe to use as a file stem."""
    return isinstance(value, str) and bool(SESSION_ID_PATTERN.match(value))


def discover_sessions(root: Path, project_filter: Optional[str] = None) -> list[SessionFile]:
    """
    Find all session transcripts under ``root``.

    Args:
        root: Transcript root directory
        project_filter: Optional case-insensitive substring of the encoded
            project directory name

    Returns:
        Session files sorted by path; empty if ``root`` does not exist

    Raises:
        SourceInaccessibleError: If ``root`` exists but cannot be listed
    """
    if not root.exists():
        logger.info(f"Session source directory does not exist: {root}")
        return []

    try:
        project_dirs = sorted(p for p in root.iterdir() if p.is_dir())
    except OSError as e:
        raise SourceInaccessibleError(
            f"Cannot list session directory: {e.strerror or e}",
            context={"path": str(root)},
        ) from e

    sessions: list[SessionFile] = []
    for project_dir in project_dirs:
        if project_filter and project_filter.lower() not in project_dir.name.lower():
            continue

        candidates = list(project_dir.glob("*.jsonl")) + list(
            project_dir.glob("*/subagents/*.jsonl")
        )
        for path in sorted(candidates):
            try:
                sessions.append(SessionFile.from_path(path, project_dir.name))
            except SourceInaccessibleError as e:
                logger.warning(f"Skipping unreadable session file {path}: {e.message}")

    logger.debug(f"Discovered {len(sessions)} session file(s) under {root}")
    return sessions


def find_session_file(root: Path, session_id: str) -> SessionFile:
    """
    Locate the transcript of one session.

    Raises:
        InvalidArgumentError: If the id is malformed (code INVALID_SESSION_ID)
        NotFoundError: If no transcript exists (code SESSION_NOT_FOUND)
    """
    if not is_valid_session_id(session_id):
        raise InvalidArgumentError(
            f"Invalid session id: {session_id!r}",
            code=ErrorCode.INVALID_SESSION_ID,
            context={"session_id": session_id},
        )

    if root.exists():
        for pattern in (f"*/{session_id}.jsonl", f"*/*/subagents/{session_id}.jsonl"):
            matches = sorted(root.glob(pattern))
            if matches:
                return SessionFile.from_path(matches[0])

    raise NotFoundError(
        f"Session not found: {session_id}",
        code=ErrorCode.SESSION_NOT_FOUND,
        context={"session_id": session_id, "source_dir": str(root)},
    )

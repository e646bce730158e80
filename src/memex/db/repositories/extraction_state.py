"""
ExtractionState repository.

Only the sync pipeline mutates extraction state. Transitions are
pending -> in_progress -> complete | failed.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from memex.db.repositories.base import BaseRepository
from memex.models.db import ExtractionState, ExtractionStatus
from memex.parsers.utils import to_iso


def _now() -> str:
    return to_iso(datetime.now(timezone.utc))


class ExtractionStateRepository(BaseRepository[ExtractionState]):
    """Repository for ExtractionState model."""

    def __init__(self, session: Session):
        super().__init__(ExtractionState, session)

    def get_by_path(self, session_path: str) -> Optional[ExtractionState]:
        return (
            self.session.query(ExtractionState)
            .filter(ExtractionState.session_path == session_path)
            .first()
        )

    def get_by_session_id(self, session_id: str) -> Optional[ExtractionState]:
        return (
            self.session.query(ExtractionState)
            .filter(ExtractionState.session_id == session_id)
            .first()
        )

    def mark_in_progress(
        self,
        session_path: str,
        session_id: str,
        format_version: Optional[str] = None,
    ) -> ExtractionState:
        """
        Start (or restart) extraction of a file.

        The previous fingerprint is cleared so an interrupted run can never be
        mistaken for a complete one.
        """
        state = self.get_by_path(session_path)
        if state is None:
            state = ExtractionState(session_path=session_path)
            self.session.add(state)

        state.session_id = session_id
        state.status = ExtractionStatus.IN_PROGRESS.value
        state.started_at = _now()
        state.completed_at = None
        state.error_message = None
        state.file_mtime_ns = None
        state.file_size = None
        state.format_version = format_version
        self.session.flush()
        return state

    def mark_complete(
        self,
        state: ExtractionState,
        messages_extracted: int,
        file_size: int,
        file_mtime_ns: int,
    ) -> ExtractionState:
        """Finish extraction, recording the fingerprint it was made from."""
        state.status = ExtractionStatus.COMPLETE.value
        state.completed_at = _now()
        state.messages_extracted = messages_extracted
        state.file_size = file_size
        state.file_mtime_ns = file_mtime_ns
        state.error_message = None
        self.session.flush()
        return state

    def mark_failed(
        self, session_path: str, session_id: Optional[str], error_message: str
    ) -> ExtractionState:
        """Record a failed extraction attempt."""
        state = self.get_by_path(session_path)
        if state is None:
            state = ExtractionState(session_path=session_path, started_at=_now())
            self.session.add(state)

        state.session_id = session_id or state.session_id
        state.status = ExtractionStatus.FAILED.value
        state.completed_at = None
        state.error_message = error_message[:2000]
        state.file_mtime_ns = None
        state.file_size = None
        self.session.flush()
        return state

    def get_incomplete(self) -> List[ExtractionState]:
        """States left pending, in progress (interrupted) or failed."""
        return (
            self.session.query(ExtractionState)
            .filter(ExtractionState.status != ExtractionStatus.COMPLETE.value)
            .order_by(ExtractionState.session_path)
            .all()
        )

    def count_by_status(self) -> dict[str, int]:
        rows = (
            self.session.query(ExtractionState.status, func.count(ExtractionState.id))
            .group_by(ExtractionState.status)
            .all()
        )
        return {status: count for status, count in rows}

"""
ChatSession repository.
"""

from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from memex.db.repositories.base import BaseRepository
from memex.models.db import ChatSession, Message


class SessionRepository(BaseRepository[ChatSession]):
    """Repository for ChatSession model."""

    def __init__(self, session: Session):
        super().__init__(ChatSession, session)

    def upsert(self, id: str, **fields) -> ChatSession:
        """
        Insert a session or update the given fields of an existing one.

        Args:
            id: Session identifier
            **fields: Column values to set

        Returns:
            The stored session
        """
        instance = self.get(id)
        if instance is None:
            return self.create(id=id, **fields)

        for key, value in fields.items():
            if value is not None:
                setattr(instance, key, value)
        instance.updated_at = func.strftime("%Y-%m-%dT%H:%M:%fZ", "now")
        self.session.flush()
        return instance

    def refresh_message_count(self, session_id: str) -> int:
        """
        Recompute the derived message count from stored messages.

        Returns:
            The new count
        """
        count = (
            self.session.query(func.count(Message.seq))
            .filter(Message.session_id == session_id)
            .scalar()
        ) or 0
        instance = self.get(session_id)
        if instance is not None:
            instance.message_count = count
            self.session.flush()
        return count

    def exists(self, session_id: str) -> bool:
        return (
            self.session.query(ChatSession.id).filter(ChatSession.id == session_id).first()
            is not None
        )

    def get_by_project(
        self, project: str, limit: Optional[int] = None
    ) -> List[ChatSession]:
        """
        Get sessions whose project name or path contains ``project``.

        Args:
            project: Case-insensitive substring
            limit: Maximum number of results

        Returns:
            Sessions, most recent first
        """
        pattern = f"%{project.lower()}%"
        query = (
            self.session.query(ChatSession)
            .filter(
                func.lower(ChatSession.project_name).like(pattern)
                | func.lower(ChatSession.project_path_decoded).like(pattern)
            )
            .order_by(ChatSession.start_time.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def get_recent(
        self, limit: int = 20, project: Optional[str] = None
    ) -> List[ChatSession]:
        """Get the most recently started sessions."""
        if project:
            return self.get_by_project(project, limit=limit)
        return (
            self.session.query(ChatSession)
            .order_by(ChatSession.start_time.desc())
            .limit(limit)
            .all()
        )

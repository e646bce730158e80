"""
Message repository.

Inserts are idempotent on the message identifier: re-inserting a stored
message is a no-op and does not touch the full-text index, because the
index trigger only fires for rows that are actually inserted.
"""

from typing import Iterable, List, Optional

from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from memex.db.repositories.base import BaseRepository
from memex.models.db import Message
from memex.models.parsed import ExtractedMessage
from memex.parsers.utils import to_iso


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model."""

    def __init__(self, session: Session):
        super().__init__(Message, session)

    def get_by_id(self, message_id: str) -> Optional[Message]:
        return self.session.query(Message).filter(Message.id == message_id).first()

    def insert_ignore(
        self,
        session_id: str,
        id: str,
        role: str,
        content: str,
        timestamp: str,
        parent_id: Optional[str] = None,
        tool_use_ids: Optional[list[str]] = None,
    ) -> bool:
        """
        Insert one message unless its identifier already exists.

        Returns:
            True if a row was inserted
        """
        statement = (
            insert(Message)
            .values(
                id=id,
                session_id=session_id,
                role=role,
                content=content,
                timestamp=timestamp,
                parent_id=parent_id,
                tool_use_ids=tool_use_ids or None,
            )
            .on_conflict_do_nothing(index_elements=["id"])
        )
        result = self.session.execute(statement)
        return result.rowcount > 0

    def insert_many(self, session_id: str, messages: Iterable[ExtractedMessage]) -> int:
        """
        Insert extracted messages, skipping ones already stored.

        Returns:
            Number of rows actually inserted
        """
        inserted = 0
        for message in messages:
            if self.insert_ignore(
                session_id=session_id,
                id=message.id,
                role=message.role,
                content=message.content,
                timestamp=to_iso(message.timestamp),
                parent_id=message.parent_id,
                tool_use_ids=message.tool_use_ids,
            ):
                inserted += 1
        return inserted

    def get_by_session(
        self, session_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        """
        Get messages of a session in chronological order.

        Args:
            session_id: Owning session
            limit: Maximum number of results
        """
        query = (
            self.session.query(Message)
            .filter(Message.session_id == session_id)
            .order_by(Message.timestamp, Message.seq)
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def count_by_session(self, session_id: str) -> int:
        return self.session.query(Message).filter(Message.session_id == session_id).count()

    def session_of(self, message_id: str) -> Optional[str]:
        """Return the owning session id of a message, if stored."""
        row = (
            self.session.query(Message.session_id)
            .filter(Message.id == message_id)
            .first()
        )
        return row[0] if row else None

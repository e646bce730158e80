"""
Topic repository.
"""

from typing import List, Optional

from sqlalchemy import String, cast, func
from sqlalchemy.orm import Session

from memex.db.repositories.base import BaseRepository
from memex.models.db import EntityType, Link, Topic


class TopicRepository(BaseRepository[Topic]):
    """Repository for Topic model."""

    def __init__(self, session: Session):
        super().__init__(Topic, session)

    def get_by_name(self, name: str) -> Optional[Topic]:
        return self.session.query(Topic).filter(Topic.name == name).first()

    def get_or_create(self, name: str) -> Topic:
        """Get a topic by exact name, creating it if needed."""
        topic = self.get_by_name(name)
        if topic is None:
            topic = self.create(name=name)
        return topic

    def for_sessions(self, session_ids: List[str], limit: int = 10) -> List[tuple[str, int]]:
        """
        Topics linked from any of the given sessions.

        Returns:
            List of (topic name, number of linking sessions)
        """
        if not session_ids:
            return []
        rows = (
            self.session.query(Topic.name, func.count(Link.id))
            .join(Link, Link.target_id == cast(Topic.id, String))
            .filter(
                Link.target_type == EntityType.TOPIC.value,
                Link.source_type == EntityType.SESSION.value,
                Link.source_id.in_(session_ids),
            )
            .group_by(Topic.name)
            .order_by(func.count(Link.id).desc(), Topic.name)
            .limit(limit)
            .all()
        )
        return [(name, count) for name, count in rows]
